from dataclasses import dataclass
from datetime import date

from src.core.errors import OperacaoInvalida


@dataclass(frozen=True)
class Periodo:
    inicio: date | None = None
    fim: date | None = None

    def __post_init__(self):
        if self.inicio and self.fim and self.inicio > self.fim:
            raise OperacaoInvalida("Data inicial posterior à data final")

    @property
    def vazio(self) -> bool:
        return self.inicio is None and self.fim is None

    def contem(self, d: date | None) -> bool:
        # documento sem data conhecida conta como dentro do período
        if d is None:
            return True
        if self.inicio and d < self.inicio:
            return False
        if self.fim and d > self.fim:
            return False
        return True

    def depois_do_fim(self, d: date | None) -> bool:
        return bool(self.fim and d and d > self.fim)
