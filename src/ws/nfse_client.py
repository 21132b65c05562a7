"""Cliente REST da API Nacional da NFS-e (ADN).

Distribuição: ``GET {NFSE_ADN_URL}/{nsu}?cnpjConsulta=...&lote=true`` devolve um
JSON com ``LoteDFe`` (documentos com NSU >= nsu, XML em GZip+Base64). A API
responde JSON válido até em HTTP 404 quando não há documentos
(``NENHUM_DOCUMENTO_LOCALIZADO``). DANFSe: ``GET {NFSE_DANFSE_URL}/{chave}``.
"""
import logging

from src.core.errors import ErroApi, FalhaPdf
from src.settings import settings
from src.ws.base import ClienteBase, DocumentoBaixado, Pagina, _digits, _inflate_doczip

logger = logging.getLogger("dfe.ws")

SEM_DOCUMENTOS = "NENHUM_DOCUMENTO_LOCALIZADO"


def _mensagem_erros(corpo: dict) -> str | None:
    erros = corpo.get("Erros") or []
    if not erros:
        return None
    partes = []
    for e in erros:
        if isinstance(e, dict):
            partes.append(" ".join(str(v) for v in (e.get("Codigo"), e.get("Descricao")) if v))
        else:
            partes.append(str(e))
    return "; ".join(p for p in partes if p) or None


class NfseClient(ClienteBase):
    suporta_pdf = True
    nome_api = "API Nacional"

    def buscar_pagina(self, cnpj: str, ult_nsu: int) -> Pagina:
        url = f"{settings.NFSE_ADN_URL.rstrip('/')}/{ult_nsu + 1}"
        r = self._requisitar("GET", url, params={"cnpjConsulta": _digits(cnpj), "lote": "true"},
                             headers={"Accept": "application/json"}, teto=settings.HTTP_TIMEOUT_SEC)
        try:
            corpo = r.json()
        except ValueError:
            raise ErroApi(f"API Nacional retornou resposta inválida (HTTP {r.status_code})", r.status_code)
        if not isinstance(corpo, dict):
            raise ErroApi("API Nacional retornou resposta inválida", r.status_code)

        lote = corpo.get("LoteDFe") or []
        status = corpo.get("StatusProcessamento")
        if not lote:
            erros = _mensagem_erros(corpo)
            if status != SEM_DOCUMENTOS and erros:
                raise ErroApi(f"Erro na API Nacional: {erros}", r.status_code)
            if status != SEM_DOCUMENTOS and r.status_code >= 400:
                raise ErroApi(f"Erro na API Nacional (HTTP {r.status_code})", r.status_code)
            return Pagina([], ult_nsu, None, False)

        docs = []
        for item in lote:
            nsu = int(item["NSU"])
            if nsu <= ult_nsu:
                continue
            chave = item.get("ChaveAcesso") or f"NFSE-NSU{nsu}-{_digits(cnpj)}"
            evento = (item.get("TipoDocumento") or "").upper() == "EVENTO"
            if evento:
                # o evento carrega a chave da nota a que se refere
                chave = f"{chave}-{nsu}"
            schema = item.get("TipoEvento") if evento and item.get("TipoEvento") else item.get("TipoDocumento")
            xml = _inflate_doczip(item["ArquivoXml"]).decode("utf-8")
            docs.append(DocumentoBaixado(nsu=nsu, chave_acesso=chave, xml=xml, schema=schema, evento=evento))
        docs.sort(key=lambda d: d.nsu)
        ult = max([ult_nsu] + [d.nsu for d in docs])
        if settings.DFE_DEBUG:
            logger.debug(f"ADN cnpj={cnpj} nsu>{ult_nsu} docs={len(docs)} ult={ult}")
        return Pagina(docs, ult, None, True)

    def baixar_pdf(self, chave_acesso: str) -> bytes:
        url = f"{settings.NFSE_DANFSE_URL.rstrip('/')}/{chave_acesso}"
        r = self._requisitar("GET", url, headers={"Accept": "application/pdf"},
                             teto=settings.PDF_TIMEOUT_SEC, max_tentativas=1)
        if r.status_code == 404:
            raise FalhaPdf(chave_acesso, "PDF não disponível no Portal Nacional (404)")
        if r.status_code != 200:
            raise FalhaPdf(chave_acesso, f"HTTP {r.status_code}")
        if not r.content.startswith(b"%PDF"):
            raise FalhaPdf(chave_acesso, "conteúdo recebido não é um PDF")
        return r.content
