"""Cursor NSU por (empresa, tipo de documento).

O cursor só avança; ``resetar`` é a única forma de voltar e é administrativa.
Escritas na mesma chave são serializadas por um lock em processo e por
``SELECT ... FOR UPDATE`` onde o banco suporta.
"""
import logging
import threading
from datetime import datetime

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from src.models import CursorNSU

logger = logging.getLogger("dfe.cursor")


class CursorStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._locks: dict[tuple[int, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock(self, empresa_id: int, tipo: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((empresa_id, tipo), threading.Lock())

    def obter(self, empresa_id: int, tipo: str) -> int | None:
        with self._session_factory() as db:
            return db.execute(
                select(CursorNSU.ultimo_nsu).where(CursorNSU.empresa_id == empresa_id, CursorNSU.tipo_documento == tipo)
            ).scalar_one_or_none()

    def detalhe(self, empresa_id: int, tipo: str) -> dict | None:
        with self._session_factory() as db:
            cur = db.execute(
                select(CursorNSU).where(CursorNSU.empresa_id == empresa_id, CursorNSU.tipo_documento == tipo)
            ).scalar_one_or_none()
            if not cur:
                return None
            return {"empresa_id": empresa_id, "tipo_documento": tipo, "ultimo_nsu": cur.ultimo_nsu,
                    "max_nsu": cur.max_nsu, "updated_at": str(cur.updated_at)}

    def avancar(self, empresa_id: int, tipo: str, novo_nsu: int, max_nsu: int | None = None) -> bool:
        """Grava ``novo_nsu`` se não for menor que o atual. Retorna False quando rejeitado."""
        with self._lock(empresa_id, tipo):
            with self._session_factory() as db:
                cur = db.execute(
                    select(CursorNSU)
                    .where(CursorNSU.empresa_id == empresa_id, CursorNSU.tipo_documento == tipo)
                    .with_for_update()
                ).scalar_one_or_none()
                agora = datetime.utcnow()
                if cur is None:
                    try:
                        db.execute(insert(CursorNSU).values(
                            empresa_id=empresa_id, tipo_documento=tipo, ultimo_nsu=novo_nsu,
                            max_nsu=max(max_nsu or 0, novo_nsu), updated_at=agora,
                        ))
                        db.commit()
                        return True
                    except IntegrityError:
                        # outro processo criou a linha entre o select e o insert
                        db.rollback()
                        cur = db.execute(
                            select(CursorNSU)
                            .where(CursorNSU.empresa_id == empresa_id, CursorNSU.tipo_documento == tipo)
                            .with_for_update()
                        ).scalar_one()
                if novo_nsu < cur.ultimo_nsu:
                    logger.warning(f"cursor empresa={empresa_id} tipo={tipo}: rejeitado {novo_nsu} < {cur.ultimo_nsu}")
                    return False
                valores = {"ultimo_nsu": novo_nsu, "updated_at": agora}
                if max_nsu is not None and max_nsu > (cur.max_nsu or 0):
                    valores["max_nsu"] = max_nsu
                db.execute(update(CursorNSU).where(CursorNSU.id == cur.id).values(**valores))
                db.commit()
                return True

    def resetar(self, empresa_id: int, tipo: str) -> None:
        with self._lock(empresa_id, tipo):
            with self._session_factory() as db:
                db.execute(update(CursorNSU)
                           .where(CursorNSU.empresa_id == empresa_id, CursorNSU.tipo_documento == tipo)
                           .values(ultimo_nsu=0, max_nsu=0, updated_at=datetime.utcnow()))
                db.commit()
        logger.info(f"cursor empresa={empresa_id} tipo={tipo} resetado")
