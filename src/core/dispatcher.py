"""Despacho de lotes: uma linha de Download Log por empresa, admissão limitada por contabilidade.

Cada lote ganha uma thread "runner" que admite os runs um a um sob o limitador
da contabilidade (``max_empresas_simultaneas``), esperando
``delay_entre_empresas`` entre admissões e respeitando a pausa do circuito 429.
Os workers rodam num ThreadPoolExecutor compartilhado.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select

from src.core.cancelamento import RunContext
from src.core.circuito import circuito as circuito_padrao
from src.core.config import DownloadConfig, carregar_config
from src.core.periodo import Periodo
from src.core.worker import certificado_ativo
from src.models import Empresa, Gatilho, ModoDownload, StatusDownload, TipoDocumento

logger = logging.getLogger("dfe.engine")


def _digits(s: str) -> str:
    return "".join(ch for ch in (s or "") if ch.isdigit())


def _vencido(valido_ate: datetime | None, agora: datetime) -> bool:
    if valido_ate is None:
        return False
    if valido_ate.tzinfo is not None:
        valido_ate = valido_ate.astimezone(timezone.utc).replace(tzinfo=None)
    return valido_ate < agora


class Lote:
    def __init__(self, contabilidade_id: int, tipo: str, run_ids: list[int], config: DownloadConfig, rodada: int = 0,
                 gatilho: str = Gatilho.MANUAL.value):
        self.contabilidade_id = contabilidade_id
        self.tipo = tipo
        self.run_ids = run_ids
        self.config = config
        self.rodada = rodada
        self.gatilho = gatilho
        self.erros_imediatos: list[int] = []
        self.por_empresa: dict[int, int] = {}
        self.ignoradas: list[int] = []
        self.inicios: dict[int, float] = {}
        self._fim = threading.Event()
        self._cancelado = threading.Event()

    @property
    def iniciados(self) -> int:
        return len(self.run_ids)

    @property
    def concluido(self) -> bool:
        return self._fim.is_set()

    def aguardar(self, timeout: float | None = None) -> bool:
        return self._fim.wait(timeout)

    def cancelar(self) -> None:
        self._cancelado.set()


class _Limitador:
    """Vagas de uma contabilidade, únicas por processo; o limite vigente é lido a cada admissão."""

    def __init__(self, limite: int):
        self.limite = limite
        self.em_execucao = 0
        self._cond = threading.Condition()

    def ajustar(self, limite: int) -> None:
        with self._cond:
            self.limite = limite
            self._cond.notify_all()

    def adquirir(self, cancelado: threading.Event, espera: float = 0.2) -> bool:
        with self._cond:
            while not cancelado.is_set():
                if self.em_execucao < self.limite:
                    self.em_execucao += 1
                    return True
                self._cond.wait(espera)
            return False

    def liberar(self) -> None:
        with self._cond:
            self.em_execucao -= 1
            self._cond.notify_all()


class Dispatcher:
    def __init__(self, session_factory, tracker, worker, cancelamento, circuito=None, max_workers: int = 32,
                 relogio: Callable[[], float] | None = None):
        self._session_factory = session_factory
        self.tracker = tracker
        self.worker = worker
        self.cancelamento = cancelamento
        self.circuito = circuito or circuito_padrao
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dfe-worker")
        self._relogio = relogio or time.monotonic
        self._lock = threading.Lock()
        # verificação de run ativo + criação precisam ser atômicas entre despachos
        self._criacao = threading.Lock()
        self._limitadores: dict[int, _Limitador] = {}
        self._lotes: dict[int, list[Lote]] = {}
        self._ao_terminar: list[Callable[[Lote], None]] = []
        cancelamento.ao_cancelar_todos(self.cancelar_fila)

    def ao_terminar_lote(self, fn: Callable[[Lote], None]) -> None:
        self._ao_terminar.append(fn)

    def desligar(self, aguardar: bool = False) -> None:
        self._executor.shutdown(wait=aguardar, cancel_futures=True)

    # ---- criação dos runs ---------------------------------------------------

    def _empresas(self, db, contabilidade_id: int, empresa_ids: list[int] | None) -> list[Empresa]:
        q = select(Empresa).where(Empresa.contabilidade_id == contabilidade_id, Empresa.ativo.is_(True))
        if empresa_ids:
            q = q.where(Empresa.id.in_(empresa_ids))
        vistos, empresas = set(), []
        for emp in db.execute(q.order_by(Empresa.id)).scalars():
            cnpj = _digits(emp.cnpj)
            if cnpj in vistos:
                logger.info(f"empresa={emp.id} CNPJ {cnpj} duplicado no lote; ignorada")
                continue
            vistos.add(cnpj)
            empresas.append(emp)
        return empresas

    def dispatch(self, contabilidade_id: int, empresa_ids: list[int] | None = None, periodo: Periodo | None = None,
                 gatilho: Gatilho | str = Gatilho.MANUAL, tipo_documento: TipoDocumento | str = TipoDocumento.NFSE,
                 somente_novas: bool = False, rodada: int = 0, substitui: dict[int, int] | None = None,
                 periodos: dict[int, Periodo | None] | None = None, config: DownloadConfig | None = None) -> Lote:
        """Cria um run por empresa e libera o lote em background.

        ``substitui`` mapeia empresa_id -> id do run em erro que este lote re-despacha;
        ``periodos`` permite manter o período original de cada run numa retomada.
        """
        tipo = TipoDocumento(tipo_documento).value
        gatilho = Gatilho(gatilho).value
        with self._session_factory() as db:
            if config is None:
                config = carregar_config(db, tipo)
            empresas = self._empresas(db, contabilidade_id, empresa_ids)
            certs = {e.id: certificado_ativo(db, e.id) for e in empresas}

        lote = Lote(contabilidade_id, tipo, [], config, rodada=rodada, gatilho=gatilho)
        with self._criacao:
            for emp in empresas:
                if somente_novas:
                    p = None
                elif periodos is not None and emp.id in periodos:
                    p = periodos[emp.id]
                else:
                    p = periodo
                self._criar_run(lote, emp, certs[emp.id], p, somente_novas, (substitui or {}).get(emp.id))

        logger.info(f"lote contabilidade={contabilidade_id} tipo={tipo} rodada={rodada}: {lote.iniciados} na fila, "
                    f"{len(lote.erros_imediatos)} erro(s) de certificado, {len(lote.ignoradas)} ignorada(s)")
        with self._lock:
            self._lotes.setdefault(contabilidade_id, []).append(lote)
        t = threading.Thread(target=self._rodar_lote, args=(lote,), name=f"dfe-lote-{contabilidade_id}-{tipo}", daemon=True)
        t.start()
        return lote

    def _criar_run(self, lote: Lote, emp: Empresa, cert, p: Periodo | None, somente_novas: bool,
                   substitui: int | None) -> None:
        if self.tracker.ativo_existe(emp.id, lote.tipo):
            logger.info(f"empresa={emp.id} tipo={lote.tipo} já tem download ativo; ignorada")
            lote.ignoradas.append(emp.id)
            return
        base = dict(
            contabilidade_id=lote.contabilidade_id, empresa_id=emp.id, empresa_nome=emp.razao_social,
            empresa_cnpj=_digits(emp.cnpj), tipo_documento=lote.tipo, gatilho=lote.gatilho, rodada=lote.rodada,
            modo=ModoDownload.NOVAS.value if somente_novas else ModoDownload.COMPLETO.value,
            periodo_inicio=p.inicio if p else None, periodo_fim=p.fim if p else None,
        )
        agora = datetime.utcnow()
        if cert is None or _vencido(cert.valido_ate, agora):
            # sem certificado válido o run nasce em erro e não ocupa vaga no pool
            vencido = cert is not None
            msg = (f"Certificado digital vencido em {cert.valido_ate:%d/%m/%Y}" if vencido
                   else "Certificado digital não cadastrado ou inativo")
            run_id = self.tracker.criar(**base, status=StatusDownload.ERRO.value, erro=msg, etapa=f"Erro: {msg}",
                                        retentavel=False, certificado_vencido=vencido, finalizado_em=agora)
            lote.erros_imediatos.append(run_id)
        else:
            run_id = self.tracker.criar(**base, status=StatusDownload.PENDENTE.value, etapa="Na fila")
            lote.run_ids.append(run_id)
        lote.por_empresa[emp.id] = run_id
        if substitui is not None:
            self.tracker.marcar_substituido(substitui, run_id)

    def redespachar(self, runs_erro, rodada: int, gatilho: Gatilho | str = Gatilho.MANUAL,
                    config: DownloadConfig | None = None) -> Lote | None:
        """Nova rodada para runs em erro: modo retomada (parte do cursor), período original mantido."""
        if not runs_erro:
            return None
        primeiro = runs_erro[0]
        periodos = {r.empresa_id: Periodo(r.periodo_inicio, r.periodo_fim) if (r.periodo_inicio or r.periodo_fim) else None
                    for r in runs_erro}
        somente_novas = all(r.modo == ModoDownload.NOVAS.value for r in runs_erro)
        lote = self.dispatch(
            primeiro.contabilidade_id, [r.empresa_id for r in runs_erro], gatilho=gatilho,
            tipo_documento=primeiro.tipo_documento, somente_novas=somente_novas, rodada=rodada,
            substitui={r.empresa_id: r.id for r in runs_erro}, periodos=periodos, config=config,
        )
        for r in runs_erro:
            if r.empresa_id not in lote.por_empresa and r.empresa_id not in lote.ignoradas:
                # empresa inativada ou removida: não há mais o que retomar
                self.tracker.descartar_retomada(r.id)
        return lote

    # ---- admissão -----------------------------------------------------------

    def _limitador(self, contabilidade_id: int, limite: int) -> _Limitador:
        """Limitador da contabilidade, compartilhado por todos os lotes e tipos; o lote mais novo define o limite."""
        with self._lock:
            lim = self._limitadores.get(contabilidade_id)
            if lim is None:
                lim = self._limitadores[contabilidade_id] = _Limitador(limite)
        lim.ajustar(limite)
        return lim

    def _esperar(self, lote: Lote, segundos: float) -> bool:
        """Espera interrompível; False se o lote foi cancelado."""
        if segundos > 0:
            lote._cancelado.wait(segundos)
        return not lote._cancelado.is_set()

    def _rodar_lote(self, lote: Lote) -> None:
        cfg = lote.config
        lim = self._limitador(lote.contabilidade_id, cfg.max_empresas_simultaneas)
        pendentes = []
        try:
            for i, run_id in enumerate(lote.run_ids):
                if i > 0 and not self._esperar(lote, cfg.delay_entre_empresas):
                    break
                pausa = self.circuito.pausa_restante()
                while pausa > 0:
                    if not self._esperar(lote, pausa):
                        break
                    pausa = self.circuito.pausa_restante()
                if not lim.adquirir(lote._cancelado):
                    break
                if self.tracker.status(run_id) != StatusDownload.PENDENTE.value:
                    lim.liberar()
                    continue
                ctx = RunContext(run_id, lote.contabilidade_id)
                self.cancelamento.registrar(ctx)
                lote.inicios[run_id] = self._relogio()
                fut = self._executor.submit(self.worker.executar, run_id, cfg, ctx)
                fut.add_done_callback(lambda f, l=lim: self._liberar(l, f))
                pendentes.append(fut)
            for fut in pendentes:
                fut.exception()
        finally:
            with self._lock:
                lotes = self._lotes.get(lote.contabilidade_id, [])
                if lote in lotes:
                    lotes.remove(lote)
            logger.info(f"lote contabilidade={lote.contabilidade_id} tipo={lote.tipo} rodada={lote.rodada} finalizado")
            for fn in self._ao_terminar:
                try:
                    fn(lote)
                except Exception:
                    logger.exception("ouvinte de fim de lote falhou")
            lote._fim.set()

    def _liberar(self, lim: _Limitador, fut) -> None:
        lim.liberar()
        if fut.exception() is not None:
            logger.error(f"worker terminou com exceção: {fut.exception()!r}")

    def cancelar_fila(self, contabilidade_id: int) -> None:
        with self._lock:
            lotes = list(self._lotes.get(contabilidade_id, []))
        for lote in lotes:
            lote.cancelar()
