"""Download Log: uma linha por (empresa, execução).

Estados: pendente -> executando -> concluido | erro | cancelado. Toda mudança
de estado é um UPDATE condicional no status atual, de forma que um
cancelamento concorrente e a finalização do worker nunca vencem os dois.
"""
import logging
from datetime import datetime

from sqlalchemy import select, insert, update, delete

from src.models import DownloadLog, StatusDownload, STATUS_ATIVOS, STATUS_TERMINAIS

logger = logging.getLogger("dfe.tracker")

ORDEM_STATUS = {
    StatusDownload.EXECUTANDO.value: 0,
    StatusDownload.PENDENTE.value: 1,
    StatusDownload.CONCLUIDO.value: 2,
    StatusDownload.ERRO.value: 3,
    StatusDownload.CANCELADO.value: 4,
}


def chave_ordenacao(r: DownloadLog):
    sem_docs = 1 if (r.status == StatusDownload.CONCLUIDO.value and not r.total_docs) else 0
    criado = r.criado_em.timestamp() if r.criado_em else 0
    return (ORDEM_STATUS.get(r.status, 9), sem_docs, -criado, -r.id)


class RunTracker:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def criar(self, **campos) -> int:
        campos.setdefault("criado_em", datetime.utcnow())
        with self._session_factory() as db:
            res = db.execute(insert(DownloadLog).values(**campos))
            db.commit()
            return res.inserted_primary_key[0]

    def obter(self, run_id: int) -> DownloadLog | None:
        with self._session_factory() as db:
            return db.get(DownloadLog, run_id)

    def status(self, run_id: int) -> str | None:
        with self._session_factory() as db:
            return db.execute(select(DownloadLog.status).where(DownloadLog.id == run_id)).scalar_one_or_none()

    def marcar_executando(self, run_id: int) -> bool:
        with self._session_factory() as db:
            res = db.execute(
                update(DownloadLog)
                .where(DownloadLog.id == run_id, DownloadLog.status == StatusDownload.PENDENTE.value)
                .values(status=StatusDownload.EXECUTANDO.value, iniciado_em=datetime.utcnow(), etapa="Iniciando")
            )
            db.commit()
            return res.rowcount == 1

    def atualizar(self, run_id: int, **campos) -> bool:
        """Só o worker dono altera a linha, e só enquanto ela está ``executando``."""
        with self._session_factory() as db:
            res = db.execute(
                update(DownloadLog)
                .where(DownloadLog.id == run_id, DownloadLog.status == StatusDownload.EXECUTANDO.value)
                .values(**campos)
            )
            db.commit()
            return res.rowcount == 1

    def finalizar(self, run_id: int, status: StatusDownload, **campos) -> bool:
        with self._session_factory() as db:
            res = db.execute(
                update(DownloadLog)
                .where(DownloadLog.id == run_id, DownloadLog.status.in_(STATUS_ATIVOS))
                .values(status=StatusDownload(status).value, finalizado_em=datetime.utcnow(), **campos)
            )
            db.commit()
        venceu = res.rowcount == 1
        if not venceu:
            logger.debug(f"run={run_id} já finalizado; {status} ignorado")
        return venceu

    def cancelar_todos(self, contabilidade_id: int) -> list[int]:
        """Cancela em um único UPDATE tudo que está pendente/executando na contabilidade."""
        with self._session_factory() as db:
            ids = list(db.execute(
                select(DownloadLog.id).where(DownloadLog.contabilidade_id == contabilidade_id,
                                             DownloadLog.status.in_(STATUS_ATIVOS))
            ).scalars())
            db.execute(
                update(DownloadLog)
                .where(DownloadLog.contabilidade_id == contabilidade_id, DownloadLog.status.in_(STATUS_ATIVOS))
                .values(status=StatusDownload.CANCELADO.value, finalizado_em=datetime.utcnow(),
                        etapa="Cancelado pelo usuário")
            )
            db.commit()
            return ids

    def ativo_existe(self, empresa_id: int, tipo: str) -> bool:
        with self._session_factory() as db:
            return db.execute(
                select(DownloadLog.id).where(DownloadLog.empresa_id == empresa_id,
                                             DownloadLog.tipo_documento == tipo,
                                             DownloadLog.status.in_(STATUS_ATIVOS)).limit(1)
            ).first() is not None

    def algum_ativo(self, contabilidade_id: int, tipo: str) -> bool:
        with self._session_factory() as db:
            return db.execute(
                select(DownloadLog.id).where(DownloadLog.contabilidade_id == contabilidade_id,
                                             DownloadLog.tipo_documento == tipo,
                                             DownloadLog.status.in_(STATUS_ATIVOS)).limit(1)
            ).first() is not None

    def erros(self, contabilidade_id: int, tipo: str, apenas_retentaveis: bool = True) -> list[DownloadLog]:
        """Runs em erro ainda não re-despachados."""
        q = select(DownloadLog).where(
            DownloadLog.contabilidade_id == contabilidade_id,
            DownloadLog.tipo_documento == tipo,
            DownloadLog.status == StatusDownload.ERRO.value,
            DownloadLog.substituido_por.is_(None),
        )
        if apenas_retentaveis:
            q = q.where(DownloadLog.retentavel.is_(True))
        with self._session_factory() as db:
            return list(db.execute(q.order_by(DownloadLog.id)).scalars())

    def marcar_substituido(self, run_id: int, novo_id: int) -> None:
        with self._session_factory() as db:
            db.execute(update(DownloadLog).where(DownloadLog.id == run_id).values(substituido_por=novo_id))
            db.commit()

    def descartar_retomada(self, run_id: int) -> None:
        with self._session_factory() as db:
            db.execute(update(DownloadLog).where(DownloadLog.id == run_id).values(retentavel=False))
            db.commit()

    def listar(self, contabilidade_id: int, tipo: str | None = None, status: str | None = None,
               incluir_substituidos: bool = False, limite: int = 500) -> list[DownloadLog]:
        q = select(DownloadLog).where(DownloadLog.contabilidade_id == contabilidade_id)
        if tipo:
            q = q.where(DownloadLog.tipo_documento == tipo)
        if status:
            q = q.where(DownloadLog.status == status)
        if not incluir_substituidos:
            q = q.where(DownloadLog.substituido_por.is_(None))
        with self._session_factory() as db:
            rows = list(db.execute(q.order_by(DownloadLog.id.desc()).limit(limite)).scalars())
        return sorted(rows, key=chave_ordenacao)

    def resumo(self, contabilidade_id: int, tipo: str | None = None) -> dict:
        rows = self.listar(contabilidade_id, tipo=tipo, limite=10_000)
        por_status = {s.value: 0 for s in StatusDownload}
        for r in rows:
            por_status[r.status] = por_status.get(r.status, 0) + 1
        return {
            "total": len(rows),
            "por_status": por_status,
            "total_docs": sum(r.total_docs or 0 for r in rows),
            "docs_novos": sum(r.docs_novos or 0 for r in rows),
            "total_pdf": sum(r.total_pdf or 0 for r in rows),
            "em_andamento": por_status[StatusDownload.PENDENTE.value] + por_status[StatusDownload.EXECUTANDO.value] > 0,
        }

    def limpar_finalizados(self, contabilidade_id: int) -> int:
        with self._session_factory() as db:
            res = db.execute(
                delete(DownloadLog).where(DownloadLog.contabilidade_id == contabilidade_id,
                                          DownloadLog.status.in_(STATUS_TERMINAIS))
            )
            db.commit()
            return res.rowcount

    def ativos(self) -> list[DownloadLog]:
        with self._session_factory() as db:
            return list(db.execute(
                select(DownloadLog).where(DownloadLog.status.in_(STATUS_ATIVOS)).order_by(DownloadLog.id)
            ).scalars())

    def executando_desde(self, limite: datetime) -> list[DownloadLog]:
        with self._session_factory() as db:
            return list(db.execute(
                select(DownloadLog).where(DownloadLog.status == StatusDownload.EXECUTANDO.value,
                                          DownloadLog.iniciado_em < limite)
            ).scalars())
