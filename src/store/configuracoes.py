from datetime import datetime
from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session
from src.models import Configuracao


def todas(db: Session) -> dict[str, str]:
    return {c: v for c, v in db.execute(select(Configuracao.chave, Configuracao.valor)).all()}


def gravar(db: Session, chave: str, valor) -> None:
    """Upsert simples; quem chama faz o commit."""
    valor = str(valor).lower() if isinstance(valor, bool) else str(valor)
    res = db.execute(update(Configuracao).where(Configuracao.chave == chave).values(valor=valor, updated_at=datetime.utcnow()))
    if res.rowcount == 0:
        db.execute(insert(Configuracao).values(chave=chave, valor=valor, updated_at=datetime.utcnow()))
