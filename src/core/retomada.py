"""Auto-retomada: re-despacha as empresas que terminaram em erro, em rodadas.

Um loop por (contabilidade, tipo), agendado no APScheduler com id
``retomada:{contabilidade}:{tipo}`` e ``max_instances=1``. Modo limitado para
depois de ``max_rodadas``; modo infinito segue até não sobrar empresa em erro
retentável, com no mínimo ``INTERVALO_MINIMO_INFINITO`` segundos entre o início
de duas rodadas.
"""
import logging
import threading
import time
from datetime import datetime, timedelta

from apscheduler.jobstores.base import ConflictingIdError, JobLookupError

from src.core.config import INTERVALO_MINIMO_INFINITO, carregar_config
from src.models import Gatilho, TipoDocumento

logger = logging.getLogger("dfe.retomada")


def job_id(contabilidade_id: int, tipo: str) -> str:
    return f"retomada:{contabilidade_id}:{tipo}"


def _dormir(evento: threading.Event, segundos: float) -> None:
    evento.wait(segundos)


class CoordenadorRetomada:
    def __init__(self, session_factory, tracker, dispatcher, cancelamento, scheduler,
                 relogio=time.monotonic, dormir=_dormir, intervalo_ativos: float = 1.0):
        self._session_factory = session_factory
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self._relogio = relogio
        self._dormir = dormir
        self._intervalo_ativos = intervalo_ativos
        self._lock = threading.Lock()
        self._em_curso: dict[tuple[int, str], threading.Event] = {}
        self.inicios_rodada: dict[tuple[int, str], list[float]] = {}
        dispatcher.ao_terminar_lote(self._lote_terminou)
        cancelamento.ao_cancelar_todos(self.parar_contabilidade)

    def _config(self, tipo: str):
        with self._session_factory() as db:
            return carregar_config(db, tipo)

    def _lote_terminou(self, lote) -> None:
        # rodadas de retomada são acompanhadas pelo próprio loop
        if lote.rodada > 0 or lote._cancelado.is_set():
            return
        cfg = self._config(lote.tipo).retomada
        if not cfg.ativa:
            return
        if not self.tracker.erros(lote.contabilidade_id, lote.tipo):
            return
        self.agendar(lote.contabilidade_id, lote.tipo, cfg.espera_seg)

    def agendar(self, contabilidade_id: int, tipo: str, espera_seg: float = 0) -> bool:
        """Agenda o loop de retomada; False se já existe um agendado ou rodando."""
        tipo = TipoDocumento(tipo).value
        if self.em_curso(contabilidade_id, tipo):
            return False
        try:
            self.scheduler.add_job(
                self.executar_rodadas, trigger="date", id=job_id(contabilidade_id, tipo),
                run_date=datetime.now() + timedelta(seconds=espera_seg), args=[contabilidade_id, tipo],
                max_instances=1, replace_existing=False, misfire_grace_time=None,
            )
        except ConflictingIdError:
            return False
        logger.info(f"retomada contabilidade={contabilidade_id} tipo={tipo} agendada em {espera_seg:.0f}s")
        return True

    def em_curso(self, contabilidade_id: int, tipo: str) -> bool:
        with self._lock:
            if (contabilidade_id, tipo) in self._em_curso:
                return True
        return self.scheduler.get_job(job_id(contabilidade_id, tipo)) is not None

    def parar(self, contabilidade_id: int, tipo: str) -> None:
        with self._lock:
            evento = self._em_curso.get((contabilidade_id, tipo))
        if evento:
            evento.set()
        try:
            self.scheduler.remove_job(job_id(contabilidade_id, tipo))
        except JobLookupError:
            pass

    def parar_contabilidade(self, contabilidade_id: int) -> None:
        for tipo in TipoDocumento:
            self.parar(contabilidade_id, tipo.value)

    def _esperar(self, parar: threading.Event, segundos: float) -> bool:
        if segundos > 0:
            self._dormir(parar, segundos)
        return not parar.is_set()

    def _aguardar_ociosos(self, contabilidade_id: int, tipo: str, parar: threading.Event) -> bool:
        while self.tracker.algum_ativo(contabilidade_id, tipo):
            if not self._esperar(parar, self._intervalo_ativos):
                return False
        return not parar.is_set()

    def executar_rodadas(self, contabilidade_id: int, tipo: str) -> int:
        """Loop de rodadas; retorna quantas rodadas foram despachadas."""
        chave = (contabilidade_id, tipo)
        parar = threading.Event()
        with self._lock:
            if chave in self._em_curso:
                return 0
            self._em_curso[chave] = parar
            inicios = self.inicios_rodada[chave] = []
        rodada = 0
        try:
            while not parar.is_set():
                if not self._aguardar_ociosos(contabilidade_id, tipo, parar):
                    break
                cfg = self._config(tipo)
                erros = self.tracker.erros(contabilidade_id, tipo)
                if not erros:
                    logger.info(f"retomada {chave}: nenhuma empresa em erro; encerrando após {rodada} rodada(s)")
                    break
                if not cfg.retomada.ativa:
                    logger.info(f"retomada {chave}: desativada")
                    break
                if not cfg.retomada.infinita and rodada >= cfg.retomada.max_rodadas:
                    logger.info(f"retomada {chave}: limite de {cfg.retomada.max_rodadas} rodada(s) atingido; "
                                f"{len(erros)} empresa(s) seguem em erro")
                    break
                if inicios:
                    falta = inicios[-1] + INTERVALO_MINIMO_INFINITO - self._relogio()
                    if not self._esperar(parar, falta):
                        break
                rodada += 1
                inicios.append(self._relogio())
                logger.info(f"retomada {chave}: rodada {rodada} com {len(erros)} empresa(s)")
                lote = self.dispatcher.redespachar(erros, rodada, gatilho=Gatilho.AGENDADO, config=cfg)
                while not lote.aguardar(0.5):
                    if parar.is_set():
                        break
                if not self._esperar(parar, cfg.retomada.espera_seg):
                    break
        finally:
            with self._lock:
                self._em_curso.pop(chave, None)
        return rodada
