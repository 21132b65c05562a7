from fastapi import APIRouter, Depends, HTTPException, Query, Request

from src.api.schemas import DownloadLogOut, ExecutarDownload, LoteOut, lote_out
from src.core.errors import OperacaoInvalida, RunNaoEncontrado
from src.core.periodo import Periodo
from src.models import StatusDownload, TipoDocumento

router = APIRouter()


def get_motor(request: Request):
    return request.app.state.motor


@router.post("/downloads/executar", response_model=LoteOut)
def executar(body: ExecutarDownload, motor=Depends(get_motor)):
    try:
        periodo = Periodo(body.periodo_inicio, body.periodo_fim)
    except OperacaoInvalida as e:
        raise HTTPException(422, str(e))
    lote = motor.execute_for_all(body.contabilidade_id, body.empresa_ids, periodo=None if periodo.vazio else periodo,
                                 tipo_documento=body.tipo_documento)
    return lote_out(lote)


@router.post("/downloads/atualizar", response_model=LoteOut)
def atualizar(contabilidade_id: int = Query(...), tipo_documento: TipoDocumento = Query(TipoDocumento.NFSE),
              motor=Depends(get_motor)):
    return lote_out(motor.update_all(contabilidade_id, tipo_documento))


@router.get("/downloads")
def status(contabilidade_id: int = Query(...), tipo_documento: TipoDocumento | None = Query(None),
           status: StatusDownload | None = Query(None), incluir_substituidos: bool = Query(False),
           motor=Depends(get_motor)):
    tipo = tipo_documento.value if tipo_documento else None
    rows = motor.download_status(contabilidade_id, tipo, status.value if status else None, incluir_substituidos)
    return {
        "resumo": motor.resumo_lote(contabilidade_id, tipo),
        "downloads": [DownloadLogOut.model_validate(r) for r in rows],
    }


@router.post("/downloads/cancelar-todos")
def cancelar_todos(contabilidade_id: int = Query(...), motor=Depends(get_motor)):
    return {"cancelados": motor.cancel_all_downloads(contabilidade_id)}


@router.post("/downloads/retomar-todos", response_model=LoteOut)
def retomar_todos(contabilidade_id: int = Query(...), tipo_documento: TipoDocumento = Query(TipoDocumento.NFSE),
                  motor=Depends(get_motor)):
    return lote_out(motor.retry_all(contabilidade_id, tipo_documento))


@router.delete("/downloads/historico")
def limpar_historico(contabilidade_id: int = Query(...), motor=Depends(get_motor)):
    return {"removidos": motor.clear_history(contabilidade_id)}


@router.post("/downloads/{run_id}/cancelar")
def cancelar(run_id: int, motor=Depends(get_motor)):
    try:
        return {"ok": motor.cancel_download(run_id)}
    except RunNaoEncontrado as e:
        raise HTTPException(404, str(e))
    except OperacaoInvalida as e:
        raise HTTPException(409, str(e))


@router.post("/downloads/{run_id}/retomar", response_model=LoteOut)
def retomar(run_id: int, motor=Depends(get_motor)):
    try:
        return lote_out(motor.retry_one(run_id))
    except RunNaoEncontrado as e:
        raise HTTPException(404, str(e))
    except OperacaoInvalida as e:
        raise HTTPException(409, str(e))
