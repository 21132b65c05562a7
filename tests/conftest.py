import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from src.core.config import DownloadConfig
from src.core.servico import MotorDownload
from src.models import Certificado, Contabilidade, Empresa
from src.store import configuracoes
from src.store.db import init_db, make_engine, make_session_factory
from src.ws.base import DocumentoBaixado, Pagina

CNPJ_BASE = "11222333000{:03d}"

CONFIG_RAPIDA = DownloadConfig(delay_entre_empresas=0, delay_entre_paginas_ms=0, delay_entre_pdfs_ms=0)


def nfse_xml(numero: int, emissao: str = "2024-01-10", prestador: str = "99888777000166",
             tomador: str = "11222333000001") -> str:
    return (
        '<NFSe xmlns="http://www.sped.fazenda.gov.br/nfse"><infNFSe>'
        f"<nNFSe>{numero}</nNFSe>"
        f"<emit><CNPJ>{prestador}</CNPJ><xNome>Prestador {prestador[:4]}</xNome></emit>"
        f"<DPS><infDPS><dhEmi>{emissao}T10:00:00-03:00</dhEmi>"
        f"<prest><CNPJ>{prestador}</CNPJ></prest>"
        f"<toma><CNPJ>{tomador}</CNPJ><xNome>Tomador {tomador[:4]}</xNome></toma></infDPS></DPS>"
        "<valores><vLiq>150.00</vLiq></valores>"
        "</infNFSe></NFSe>"
    )


def chave(nsu: int) -> str:
    return str(nsu).rjust(50, "3")


def pagina(nsus, emissao: str = "2024-01-10", tem_mais: bool = True, max_nsu=None) -> Pagina:
    docs = [DocumentoBaixado(nsu=n, chave_acesso=chave(n), xml=nfse_xml(n, emissao), schema="NFSE") for n in nsus]
    ult = max(nsus) if nsus else 0
    return Pagina(docs, ult, max_nsu, tem_mais)


def esperar(cond, timeout: float = 10.0, passo: float = 0.02) -> bool:
    fim = time.monotonic() + timeout
    while time.monotonic() < fim:
        if cond():
            return True
        time.sleep(passo)
    return cond()


class FakeApi:
    """API programável: por CNPJ, uma fila de ``Pagina`` ou exceções."""

    def __init__(self):
        self.paginas: dict[str, list] = {}
        self.pdfs: dict[str, object] = {}
        self.suporta_pdf = True
        self.atraso = 0.0
        self.chamadas: list[tuple[str, int]] = []
        self.pdf_chamadas: list[str] = []
        self.ao_buscar = None
        self.ativos = 0
        self.pico = 0
        self._lock = threading.Lock()

    @contextmanager
    def fabrica(self, tipo, certificado, ctx):
        with self._lock:
            self.ativos += 1
            self.pico = max(self.pico, self.ativos)
        try:
            yield FakeCliente(self, ctx)
        finally:
            with self._lock:
                self.ativos -= 1


class FakeCliente:
    def __init__(self, api: FakeApi, ctx):
        self.api = api
        self.ctx = ctx
        self.suporta_pdf = api.suporta_pdf

    def buscar_pagina(self, cnpj: str, ult_nsu: int) -> Pagina:
        with self.api._lock:
            self.api.chamadas.append((cnpj, ult_nsu))
            fila = self.api.paginas.get(cnpj, [])
            item = fila.pop(0) if fila else Pagina([], ult_nsu, None, False)
        if self.api.ao_buscar:
            self.api.ao_buscar(cnpj, ult_nsu)
        if self.api.atraso:
            self.ctx.aguardar(self.api.atraso)
        if isinstance(item, Exception):
            raise item
        return item

    def baixar_pdf(self, chave_acesso: str) -> bytes:
        self.api.pdf_chamadas.append(chave_acesso)
        item = self.api.pdfs.get(chave_acesso, b"%PDF-1.4 fake")
        if isinstance(item, list):
            item = item.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def session_factory(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'dfe.db'}")
    init_db(eng)
    yield make_session_factory(eng)
    eng.dispose()


def semear(session_factory, n: int = 3, contabilidade_id: int = 1, sem_certificado=(), vencidos=()) -> list[int]:
    """Cria a contabilidade e ``n`` empresas ativas; retorna os ids das empresas."""
    ids = []
    with session_factory() as db:
        if db.get(Contabilidade, contabilidade_id) is None:
            db.add(Contabilidade(id=contabilidade_id, nome=f"Contabilidade {contabilidade_id}"))
            db.flush()
        for i in range(1, n + 1):
            emp = Empresa(contabilidade_id=contabilidade_id, cnpj=CNPJ_BASE.format(contabilidade_id * 100 + i),
                          razao_social=f"Empresa {i}")
            db.add(emp)
            db.flush()
            ids.append(emp.id)
            if i in sem_certificado:
                continue
            validade = datetime.utcnow() + (timedelta(days=-1) if i in vencidos else timedelta(days=365))
            db.add(Certificado(empresa_id=emp.id, pfx_path=f"/tmp/{emp.id}.pfx", senha_cripto="x", valido_ate=validade))
        db.commit()
    return ids


def cnpj_de(session_factory, empresa_id: int) -> str:
    with session_factory() as db:
        return db.get(Empresa, empresa_id).cnpj


def gravar_config(session_factory, **kv):
    with session_factory() as db:
        for k, v in kv.items():
            configuracoes.gravar(db, k, v)
        db.commit()


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def motor(session_factory, api, tmp_path):
    gravar_config(session_factory, delay_entre_empresas=0, delay_entre_paginas=0, delay_entre_pdfs=0)
    m = MotorDownload(session_factory, fabrica_cliente=api.fabrica, scheduler=BackgroundScheduler(),
                      pasta_pdf=str(tmp_path / "pdf"))
    yield m
    m.desligar()
