from fastapi import APIRouter, Depends, HTTPException, Query

from src.api.routes.downloads import get_motor
from src.models import TipoDocumento

router = APIRouter()


@router.get("/nsu/cursor")
def get_cursor(empresa_id: int = Query(...), tipo_documento: TipoDocumento = Query(TipoDocumento.NFSE),
               motor=Depends(get_motor)):
    cur = motor.cursor(empresa_id, tipo_documento)
    if not cur:
        raise HTTPException(404, "Cursor não encontrado")
    return cur


@router.post("/nsu/cursor/reset")
def reset_cursor(empresa_id: int = Query(...), tipo_documento: TipoDocumento = Query(TipoDocumento.NFSE),
                 motor=Depends(get_motor)):
    motor.reset_cursor(empresa_id, tipo_documento)
    return {"ok": True, "empresa_id": empresa_id, "tipo_documento": tipo_documento.value, "ultimo_nsu": 0}
