"""Jobs periódicos: sincronização agendada (somente novas) e detecção de downloads travados."""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy import select

from src.models import CursorNSU, Empresa, TipoDocumento, Gatilho
from src.settings import settings

logger = logging.getLogger("dfe.jobs")

# CT-e com ultNSU == maxNSU: segura a empresa por ~1h antes de nova consulta
JANELA_OCIOSA = timedelta(hours=1)


def contabilidades_ativas(session_factory) -> list[int]:
    with session_factory() as db:
        return list(db.scalars(select(Empresa.contabilidade_id).where(Empresa.ativo.is_(True)).distinct()))


def empresas_para_sync(session_factory, contabilidade_id: int, tipo: str, agora: datetime | None = None) -> list[int]:
    agora = agora or datetime.utcnow()
    with session_factory() as db:
        ids = list(db.scalars(select(Empresa.id).where(Empresa.contabilidade_id == contabilidade_id,
                                                       Empresa.ativo.is_(True)).order_by(Empresa.id)))
        if tipo != TipoDocumento.CTE.value or not ids:
            return ids
        ociosas = set(db.scalars(select(CursorNSU.empresa_id).where(
            CursorNSU.tipo_documento == tipo,
            CursorNSU.empresa_id.in_(ids),
            CursorNSU.max_nsu > 0,
            CursorNSU.ultimo_nsu >= CursorNSU.max_nsu,
            CursorNSU.updated_at > agora - JANELA_OCIOSA,
        )))
    return [i for i in ids if i not in ociosas]


def sync_agendado(motor) -> int:
    n = 0
    for contab in contabilidades_ativas(motor._session_factory):
        for tipo in TipoDocumento:
            ids = empresas_para_sync(motor._session_factory, contab, tipo.value)
            if not ids:
                logger.info(f"sync agendado contabilidade={contab} tipo={tipo.value}: nenhuma empresa a consultar")
                continue
            lote = motor.update_all(contab, tipo, gatilho=Gatilho.AGENDADO, empresa_ids=ids)
            logger.info(f"sync agendado contabilidade={contab} tipo={tipo.value} iniciados={lote.iniciados}")
            n += lote.iniciados
    return n


def verificar_travados(motor) -> int:
    n = motor.verificar_travados()
    if n:
        logger.warning(f"{n} download(s) travado(s) finalizado(s) como erro")
    return n


def registrar_jobs(sched, motor) -> None:
    sched.add_job(sync_agendado, "interval", minutes=settings.JOB_INTERVAL_MINUTES, args=[motor],
                  id="sync_agendado", max_instances=1, replace_existing=True)
    sched.add_job(verificar_travados, "interval", minutes=5, args=[motor],
                  id="verificar_travados", max_instances=1, replace_existing=True)


if __name__ == "__main__":
    from src.core.logs import configurar_logging
    from src.core.servico import MotorDownload
    from src.store.db import init_db

    configurar_logging()
    init_db()
    motor = MotorDownload()
    motor.iniciar()
    sched = BlockingScheduler()
    registrar_jobs(sched, motor)
    try:
        sched.start()
    finally:
        motor.desligar()
