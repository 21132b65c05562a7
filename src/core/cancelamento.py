"""Cancelamento cooperativo.

Cada execução recebe um ``RunContext``: um ``threading.Event`` de cancelamento
mais um prazo. O worker chama ``verificar()`` entre unidades de trabalho e usa
``aguardar()`` para todas as pausas, que acordam assim que o evento é sinalizado.
"""
import logging
import math
import threading
import time
from typing import Callable

from src.core.errors import DownloadCancelado, TempoEsgotado, RunNaoEncontrado, OperacaoInvalida
from src.models import StatusDownload, STATUS_ATIVOS

logger = logging.getLogger("dfe.cancelamento")


class RunContext:
    def __init__(self, run_id: int, contabilidade_id: int | None = None, relogio: Callable[[], float] = time.monotonic):
        self.run_id = run_id
        self.contabilidade_id = contabilidade_id
        self._relogio = relogio
        self._evento = threading.Event()
        self.prazo_seg: float | None = None
        self._deadline = math.inf

    def iniciar(self, prazo_seg: float) -> None:
        self.prazo_seg = prazo_seg
        self._deadline = self._relogio() + prazo_seg

    def cancelar(self) -> None:
        self._evento.set()

    @property
    def cancelado(self) -> bool:
        return self._evento.is_set()

    def restante(self) -> float:
        return self._deadline - self._relogio()

    def verificar(self) -> None:
        if self._evento.is_set():
            raise DownloadCancelado(f"run {self.run_id} cancelado")
        if self.restante() <= 0:
            raise TempoEsgotado(f"Tempo limite de {int(self.prazo_seg or 0)}s excedido")

    def aguardar(self, segundos: float) -> None:
        if segundos > 0:
            self._evento.wait(min(segundos, max(self.restante(), 0)))
        self.verificar()

    def timeout(self, teto: float) -> float:
        """Timeout de uma requisição: nunca maior que o prazo restante."""
        return max(1.0, min(float(teto), self.restante()))


class GerenciadorCancelamento:
    def __init__(self, tracker):
        self._tracker = tracker
        self._contextos: dict[int, RunContext] = {}
        self._lock = threading.Lock()
        self._ouvintes: list[Callable[[int], None]] = []

    def ao_cancelar_todos(self, fn: Callable[[int], None]) -> None:
        """Registra quem precisa reagir a um cancelar-todos (fila de admissão, retomada)."""
        self._ouvintes.append(fn)

    def registrar(self, ctx: RunContext) -> None:
        with self._lock:
            self._contextos[ctx.run_id] = ctx

    def remover(self, run_id: int) -> None:
        with self._lock:
            self._contextos.pop(run_id, None)

    def vivo(self, run_id: int) -> bool:
        with self._lock:
            return run_id in self._contextos

    def _sinalizar(self, run_id: int) -> None:
        with self._lock:
            ctx = self._contextos.get(run_id)
        if ctx:
            ctx.cancelar()

    def cancelar(self, run_id: int) -> bool:
        status = self._tracker.status(run_id)
        if status is None:
            raise RunNaoEncontrado(f"Download {run_id} não encontrado")
        if status not in STATUS_ATIVOS:
            raise OperacaoInvalida(f"Download {run_id} já está {status}")
        venceu = self._tracker.finalizar(run_id, StatusDownload.CANCELADO, etapa="Cancelado pelo usuário")
        self._sinalizar(run_id)
        logger.info(f"run={run_id} cancelado (venceu={venceu})")
        return venceu

    def cancelar_todos(self, contabilidade_id: int) -> int:
        # para primeiro a admissão e a retomada, para que nada novo nasça durante o UPDATE
        for fn in self._ouvintes:
            fn(contabilidade_id)
        ids = self._tracker.cancelar_todos(contabilidade_id)
        with self._lock:
            vivos = [c for c in self._contextos.values() if c.contabilidade_id == contabilidade_id or c.run_id in ids]
        for ctx in vivos:
            ctx.cancelar()
        logger.info(f"contabilidade={contabilidade_id}: {len(ids)} download(s) cancelado(s)")
        return len(ids)
