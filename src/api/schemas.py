from datetime import date, datetime

from pydantic import BaseModel, ConfigDict

from src.models import TipoDocumento


class ExecutarDownload(BaseModel):
    contabilidade_id: int
    empresa_ids: list[int] | None = None
    periodo_inicio: date | None = None
    periodo_fim: date | None = None
    tipo_documento: TipoDocumento = TipoDocumento.NFSE


class LoteOut(BaseModel):
    iniciados: int
    run_ids: list[int]
    erros_certificado: list[int] = []
    ignoradas: list[int] = []


class DownloadLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contabilidade_id: int
    empresa_id: int
    empresa_nome: str | None = None
    empresa_cnpj: str | None = None
    tipo_documento: str
    status: str
    gatilho: str
    modo: str
    periodo_inicio: date | None = None
    periodo_fim: date | None = None
    progresso: int = 0
    total_esperado: int | None = None
    total_docs: int = 0
    docs_novos: int = 0
    total_pdf: int = 0
    erros_pdf: int = 0
    etapa: str | None = None
    erro: str | None = None
    ultimo_nsu: int | None = None
    certificado_vencido: bool = False
    retentavel: bool = True
    rodada: int = 0
    substituido_por: int | None = None
    criado_em: datetime | None = None
    iniciado_em: datetime | None = None
    finalizado_em: datetime | None = None


def lote_out(lote) -> LoteOut:
    if lote is None:
        return LoteOut(iniciados=0, run_ids=[])
    return LoteOut(iniciados=lote.iniciados, run_ids=lote.run_ids,
                   erros_certificado=lote.erros_imediatos, ignoradas=lote.ignoradas)
