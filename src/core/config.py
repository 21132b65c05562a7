"""Snapshot tipado das configurações do motor, lido da tabela ``configuracoes``.

Um ``DownloadConfig`` é resolvido uma vez por despacho e usado para o lote
inteiro; alterações feitas pela tela de configurações só valem no próximo lote.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from src.models import TipoDocumento
from src.store import configuracoes

# (qtd. de documentos conhecidos, segundos extras); interpolação linear, plana após o último
PONTOS_TIMEOUT_DINAMICO: tuple[tuple[int, int], ...] = ((50, 0), (200, 300), (500, 900))

INTERVALO_MINIMO_INFINITO = 15


class ConfigRetomada(BaseModel):
    model_config = ConfigDict(frozen=True)

    ativa: bool = False
    espera_seg: int = 300
    infinita: bool = False
    max_rodadas: int = 3


class DownloadConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_empresas_simultaneas: int = 3
    delay_entre_empresas: float = 3.0
    timeout_por_empresa: int = 180
    timeout_dinamico: bool = True
    delay_entre_paginas_ms: int = 300
    delay_entre_pdfs_ms: int = 500
    baixar_pdf: bool = True
    pular_pdf_erro: bool = False
    retomada: ConfigRetomada = ConfigRetomada()

    def timeout_para(self, docs_conhecidos: int) -> float:
        """Prazo (s) de uma empresa, crescendo com o volume já conhecido quando dinâmico."""
        base = float(self.timeout_por_empresa)
        if not self.timeout_dinamico:
            return base
        return base + extra_dinamico(docs_conhecidos)

    def timeout_maximo(self) -> float:
        extra = PONTOS_TIMEOUT_DINAMICO[-1][1] if self.timeout_dinamico else 0
        return float(self.timeout_por_empresa + extra)


def extra_dinamico(docs: int, pontos=PONTOS_TIMEOUT_DINAMICO) -> float:
    if docs <= pontos[0][0]:
        return float(pontos[0][1])
    for (x0, y0), (x1, y1) in zip(pontos, pontos[1:]):
        if docs <= x1:
            return y0 + (y1 - y0) * (docs - x0) / (x1 - x0)
    return float(pontos[-1][1])


def parse_hms(valor: str | None, padrao: int = 300) -> int:
    """'HH:MM:SS' (ou 'MM:SS', ou segundos) -> segundos."""
    if not valor:
        return padrao
    partes = valor.strip().split(":")
    try:
        nums = [int(p) for p in partes]
    except ValueError:
        return padrao
    if len(nums) > 3 or any(n < 0 for n in nums):
        return padrao
    total = 0
    for n in nums:
        total = total * 60 + n
    return total


def _int(valor: str | None, padrao: int, minimo: int | None = None, maximo: int | None = None) -> int:
    try:
        n = int(float(valor)) if valor not in (None, "") else padrao
    except ValueError:
        n = padrao
    if minimo is not None:
        n = max(minimo, n)
    if maximo is not None:
        n = min(maximo, n)
    return n


def _float(valor: str | None, padrao: float, minimo: float, maximo: float) -> float:
    try:
        n = float(valor) if valor not in (None, "") else padrao
    except ValueError:
        n = padrao
    return max(minimo, min(maximo, n))


def _bool(valor: str | None, padrao: bool) -> bool:
    if valor in (None, ""):
        return padrao
    return valor.strip().lower() in ("true", "1", "sim", "on")


def carregar_config(db: Session, tipo: TipoDocumento | str) -> DownloadConfig:
    tipo = TipoDocumento(tipo)
    kv = configuracoes.todas(db)
    sufixo = f"_{tipo.value}"
    retomada = ConfigRetomada(
        ativa=_bool(kv.get("auto_retomada" + sufixo), False),
        espera_seg=parse_hms(kv.get("auto_retomada_tempo" + sufixo)),
        infinita=_bool(kv.get("retomada_infinita" + sufixo), False),
        max_rodadas=_int(kv.get("max_rodadas_retomada" + sufixo), 3, 1, 10),
    )
    return DownloadConfig(
        max_empresas_simultaneas=_int(kv.get("max_empresas_simultaneas"), 3, 1, 10),
        delay_entre_empresas=_float(kv.get("delay_entre_empresas"), 3.0, 0.0, 10.0),
        timeout_por_empresa=_int(kv.get("timeout_por_empresa"), 180, 60),
        timeout_dinamico=_bool(kv.get("timeout_dinamico"), True),
        delay_entre_paginas_ms=_int(kv.get("delay_entre_paginas"), 300, 0, 5000),
        delay_entre_pdfs_ms=_int(kv.get("delay_entre_pdfs"), 500, 0, 5000),
        baixar_pdf=_bool(kv.get("baixar_pdf"), True),
        pular_pdf_erro=_bool(kv.get("pular_pdf_erro"), False),
        retomada=retomada,
    )
