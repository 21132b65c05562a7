"""Resumo mínimo de um XML de NFS-e / CT-e: número, valor, data, direção e contraparte."""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

from lxml import etree

logger = logging.getLogger("dfe.xml")


@dataclass
class ResumoDocumento:
    numero: str | None = None
    valor: Decimal | None = None
    data_emissao: date | None = None
    emitente_cnpj: str | None = None
    contraparte_cnpj: str | None = None
    contraparte_nome: str | None = None
    direcao: str = "terceiro"


def _digits(s: str | None) -> str:
    return "".join(ch for ch in (s or "") if ch.isdigit())


def _no(raiz, *caminho):
    expr = ".//" + "/".join(f"*[local-name()='{t}']" for t in caminho)
    achados = raiz.xpath(expr)
    return achados[0] if achados else None


def _txt(raiz, *caminho) -> str | None:
    el = _no(raiz, *caminho) if raiz is not None else None
    if el is None or el.text is None:
        return None
    return el.text.strip() or None


def _data(s: str | None) -> date | None:
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def _valor(s: str | None) -> Decimal | None:
    if not s:
        return None
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def _carregar(xml: str | bytes):
    dados = xml.encode("utf-8") if isinstance(xml, str) else xml
    parser = etree.XMLParser(recover=False, huge_tree=True, resolve_entities=False)
    return etree.fromstring(dados, parser=parser)


def _parte(raiz, tag):
    no = _no(raiz, tag)
    if no is None:
        return None, None
    return _digits(_txt(no, "CNPJ") or _txt(no, "CPF")) or None, _txt(no, "xNome")


def _direcao(empresa: str, emitente: str | None, tomador: str | None) -> str:
    if emitente and emitente == empresa:
        return "emitido"
    if tomador and tomador == empresa:
        return "recebido"
    return "terceiro"


def resumo_nfse(xml, cnpj_empresa: str) -> ResumoDocumento:
    raiz = _carregar(xml)
    emit_cnpj, emit_nome = _parte(raiz, "emit")
    if not emit_cnpj:
        emit_cnpj, emit_nome = _parte(raiz, "prest")
    toma_cnpj, toma_nome = _parte(raiz, "toma")
    empresa = _digits(cnpj_empresa)
    direcao = _direcao(empresa, emit_cnpj, toma_cnpj)
    if direcao == "emitido":
        contra_cnpj, contra_nome = toma_cnpj, toma_nome
    else:
        contra_cnpj, contra_nome = emit_cnpj, emit_nome
    return ResumoDocumento(
        numero=_txt(raiz, "nNFSe") or _txt(raiz, "nDPS"),
        valor=_valor(_txt(raiz, "vLiq") or _txt(raiz, "vServ")),
        data_emissao=_data(_txt(raiz, "dhEmi") or _txt(raiz, "dhProc") or _txt(raiz, "dhEvento")),
        emitente_cnpj=emit_cnpj,
        contraparte_cnpj=contra_cnpj,
        contraparte_nome=contra_nome,
        direcao=direcao,
    )


def resumo_cte(xml, cnpj_empresa: str) -> ResumoDocumento:
    raiz = _carregar(xml)
    emit_cnpj, emit_nome = _parte(raiz, "emit")
    rem = _parte(raiz, "rem")
    dest = _parte(raiz, "dest")
    # toma3 só indica quem é o tomador: 0=remetente, 3=destinatário
    toma_cnpj, toma_nome = _parte(raiz, "toma4")
    if not toma_cnpj:
        indicador = _txt(raiz, "toma3", "toma")
        if indicador == "0":
            toma_cnpj, toma_nome = rem
        elif indicador == "3":
            toma_cnpj, toma_nome = dest
    empresa = _digits(cnpj_empresa)
    direcao = _direcao(empresa, emit_cnpj, toma_cnpj)
    if direcao == "emitido":
        contra_cnpj, contra_nome = toma_cnpj or dest[0], toma_nome or dest[1]
    else:
        contra_cnpj, contra_nome = emit_cnpj, emit_nome
    return ResumoDocumento(
        numero=_txt(raiz, "nCT"),
        valor=_valor(_txt(raiz, "vTPrest")),
        data_emissao=_data(_txt(raiz, "dhEmi") or _txt(raiz, "dhEvento")),
        emitente_cnpj=emit_cnpj,
        contraparte_cnpj=contra_cnpj,
        contraparte_nome=contra_nome,
        direcao=direcao,
    )


def resumir(tipo: str, xml, cnpj_empresa: str) -> ResumoDocumento:
    """Nunca falha: XML ilegível vira resumo vazio (o documento é gravado mesmo assim)."""
    try:
        return resumo_cte(xml, cnpj_empresa) if tipo == "cte" else resumo_nfse(xml, cnpj_empresa)
    except etree.XMLSyntaxError as e:
        logger.warning(f"XML ilegível ({tipo}): {e}")
        return ResumoDocumento()
