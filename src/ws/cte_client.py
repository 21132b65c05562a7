"""Distribuição DF-e do CT-e (SOAP 1.2, ``cteDistDFeInteresse``) por NSU.

Por padrão posta o envelope direto com requests; com ``CTE_USE_WSDL`` usa zeep
sobre a mesma sessão mTLS. cStat: 137=nenhum documento, 138=documentos
localizados, 656=consumo indevido, 108/109=serviço paralisado.
"""
import logging
import re

import requests
from lxml import etree
from zeep import Client, Settings
from zeep.exceptions import Error as ZeepError
from zeep.transports import Transport

from src.core.errors import ErroApi, FalhaRede, LimiteRequisicoes
from src.settings import settings
from src.ws.base import ClienteBase, DocumentoBaixado, Pagina, _digits, _ensure_nsu15, _inflate_doczip

logger = logging.getLogger("dfe.ws")

NS_WS = "http://www.portalfiscal.inf.br/cte/wsdl/CTeDistribuicaoDFe"
NS_CTE = "http://www.portalfiscal.inf.br/cte"
NS_SOAP12 = "http://www.w3.org/2003/05/soap-envelope"
ACTION = NS_WS + "/cteDistDFeInteresse"

_RE_CHAVE = re.compile(r"<chCTe>(\d{44})</chCTe>")
_RE_ID = re.compile(r'Id="CTe(\d{44})"')


def _producao() -> bool:
    return settings.AMBIENTE.upper().startswith("PROD")


def _dist_url() -> str:
    return settings.CTE_DIST_URL_PRODUCAO if _producao() else settings.CTE_DIST_URL_HOMOLOG


def montar_dist_nsu(cnpj: str, ult_nsu: int) -> etree._Element:
    root = etree.Element("distDFeInt", nsmap={None: NS_CTE}, versao="1.00")
    etree.SubElement(root, "tpAmb").text = "1" if _producao() else "2"
    etree.SubElement(root, "cUFAutor").text = str(settings.CTE_CUF_AUTOR)
    etree.SubElement(root, "CNPJ").text = _digits(cnpj)
    dist = etree.SubElement(root, "distNSU")
    etree.SubElement(dist, "ultNSU").text = _ensure_nsu15(ult_nsu)
    return root


def montar_envelope(dados: etree._Element) -> bytes:
    env = etree.Element(f"{{{NS_SOAP12}}}Envelope", nsmap={"soap12": NS_SOAP12})
    header = etree.SubElement(env, f"{{{NS_SOAP12}}}Header")
    cabec = etree.SubElement(header, f"{{{NS_WS}}}cteCabecMsg", nsmap={None: NS_WS})
    etree.SubElement(cabec, f"{{{NS_WS}}}cUF").text = str(settings.CTE_CUF_AUTOR)
    etree.SubElement(cabec, f"{{{NS_WS}}}versaoDados").text = "1.00"
    body = etree.SubElement(env, f"{{{NS_SOAP12}}}Body")
    op = etree.SubElement(body, f"{{{NS_WS}}}cteDistDFeInteresse", nsmap={None: NS_WS})
    msg = etree.SubElement(op, f"{{{NS_WS}}}cteDadosMsg")
    msg.append(dados)
    return etree.tostring(env, xml_declaration=True, encoding="utf-8")


def _chave(xml: str, nsu: int, cnpj: str, evento: bool) -> str:
    m = _RE_CHAVE.search(xml) or _RE_ID.search(xml)
    if not m:
        return f"CTE-NSU{nsu}-{_digits(cnpj)}"
    return f"{m.group(1)}-{nsu}" if evento else m.group(1)


def parse_ret_dist(xml: bytes, cnpj: str) -> tuple[str | None, str | None, int, int, list[DocumentoBaixado]]:
    doc = etree.fromstring(xml)
    ret = doc if etree.QName(doc).localname == "retDistDFeInt" else doc.find(f".//{{{NS_CTE}}}retDistDFeInt")
    if ret is None:
        ret = doc.find(".//retDistDFeInt")
    if ret is None:
        fault = doc.xpath(".//*[local-name()='Fault']//*[local-name()='Text']")
        if fault:
            raise ErroApi(f"Erro SOAP CT-e: {fault[0].text}")
        raise ErroApi("Resposta inválida da API CT-e - retDistDFeInt não encontrado")

    def gx(tag):
        el = ret.find(f"{{{NS_CTE}}}{tag}")
        return el.text if el is not None else None

    docs = []
    for el in ret.iter(f"{{{NS_CTE}}}docZip"):
        nsu = int(el.get("NSU"))
        schema = el.get("schema") or ""
        conteudo = _inflate_doczip(el.text).decode("utf-8")
        evento = "Evento" in schema
        docs.append(DocumentoBaixado(nsu=nsu, chave_acesso=_chave(conteudo, nsu, cnpj, evento),
                                     xml=conteudo, schema=schema, evento=evento))
    return gx("cStat"), gx("xMotivo"), int(gx("ultNSU") or 0), int(gx("maxNSU") or 0), docs


class CteClient(ClienteBase):
    # DACTE é renderizado fora do motor
    suporta_pdf = False
    nome_api = "API CT-e"

    def __init__(self, *args, **kw):
        super().__init__(*args, **kw)
        self._zeep = None

    def _criar_zeep(self):
        transport = Transport(session=self.session, timeout=settings.HTTP_TIMEOUT_SEC)
        return Client(wsdl=_dist_url() + "?wsdl", transport=transport,
                      settings=Settings(strict=False, xml_huge_tree=True))

    def _chamar(self, dados: etree._Element) -> bytes:
        if settings.CTE_USE_WSDL:
            self.ctx.verificar()
            try:
                if self._zeep is None:
                    self._zeep = self._criar_zeep()
                resp = self._zeep.service.cteDistDFeInteresse(cteDadosMsg=dados)
            except requests.RequestException as e:
                raise FalhaRede(f"API CT-e indisponível ({e.__class__.__name__})") from e
            except ZeepError as e:
                raise ErroApi(f"Erro SOAP CT-e: {e}") from e
            return etree.tostring(resp, encoding="utf-8")
        headers = {"Content-Type": f'application/soap+xml; charset=utf-8; action="{ACTION}"'}
        r = self._requisitar("POST", _dist_url(), data=montar_envelope(dados), headers=headers,
                             teto=settings.HTTP_TIMEOUT_SEC)
        if r.status_code >= 400:
            raise ErroApi(f"CT-e API HTTP {r.status_code}: {r.text[:200]}", r.status_code)
        return r.content

    def buscar_pagina(self, cnpj: str, ult_nsu: int) -> Pagina:
        raw = self._chamar(montar_dist_nsu(cnpj, ult_nsu))
        try:
            c_stat, x_motivo, ult, maxi, docs = parse_ret_dist(raw, cnpj)
        except etree.XMLSyntaxError as e:
            raise ErroApi(f"Resposta inválida da API CT-e: {e}") from e
        if settings.DFE_DEBUG:
            logger.debug(f"CT-e distDFe cStat={c_stat} xMotivo={x_motivo} ultNSU={ult} maxNSU={maxi} docs={len(docs)}")
        if c_stat == "137":
            return Pagina([], max(ult, ult_nsu), maxi, False)
        if c_stat == "656":
            raise LimiteRequisicoes(f"Consumo indevido na API CT-e (656): {x_motivo or ''}".strip(), 656)
        if c_stat != "138":
            raise ErroApi(f"API CT-e cStat {c_stat}: {x_motivo or 'sem motivo'}")
        docs = sorted((d for d in docs if d.nsu > ult_nsu), key=lambda d: d.nsu)
        ult = max(ult, ult_nsu)
        return Pagina(docs, ult, maxi, ult < maxi)
