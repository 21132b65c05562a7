import logging
import threading
import time

logger = logging.getLogger("dfe.engine")


class Circuito429:
    """Pausa global de admissões depois de um HTTP 429.

    Cada 429 dobra a pausa (5s, 10s, 20s, teto 30s); cada sucesso reduz o nível.
    """

    BASE_SEG = 5.0
    TETO_SEG = 30.0

    def __init__(self, relogio=time.monotonic):
        self._relogio = relogio
        self._lock = threading.Lock()
        self._nivel = 0
        self._ate = 0.0

    def registrar_429(self) -> float:
        with self._lock:
            pausa = min(self.BASE_SEG * (2 ** self._nivel), self.TETO_SEG)
            self._nivel += 1
            self._ate = max(self._ate, self._relogio() + pausa)
        logger.warning(f"HTTP 429: novas admissões pausadas por {pausa:.0f}s")
        return pausa

    def registrar_sucesso(self) -> None:
        with self._lock:
            if self._nivel > 0:
                self._nivel -= 1

    def pausa_restante(self) -> float:
        with self._lock:
            return max(0.0, self._ate - self._relogio())


circuito = Circuito429()
