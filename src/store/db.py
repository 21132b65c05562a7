from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from src.settings import settings


def make_engine(url: str):
    # sqlite: várias threads de worker compartilham o arquivo; aguarda lock em vez de falhar
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)


def make_session_factory(eng):
    return sessionmaker(bind=eng, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


engine = make_engine(settings.DB_URL)
SessionLocal = make_session_factory(engine)


def init_db(eng=None):
    """Cria as tabelas direto pelo metadata (dev/testes). Em produção use Alembic."""
    from src.models import Base
    Base.metadata.create_all(eng or engine)
