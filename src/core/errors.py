"""Taxonomia de erros do motor de download.

Cada falha que encerra um download vira uma destas exceções; o worker grava
``mensagem_amigavel(exc)`` no log e decide o status final a partir da classe:

- ``CertificadoError``: terminal, não entra na auto-retomada.
- ``FalhaRede`` / ``TempoEsgotado``: retentável.
- ``ErroApi`` (inclui ``LimiteRequisicoes``): retentável.
- ``DownloadCancelado``: não é erro; vira status ``cancelado``.
- ``FalhaPdf``: só escapa do worker quando a política de pular PDFs está desligada.
"""
import re


class DownloadError(Exception):
    retentavel = True


class CertificadoError(DownloadError):
    retentavel = False

    def __init__(self, msg: str, vencido: bool = False):
        super().__init__(msg)
        self.vencido = vencido


class FalhaRede(DownloadError):
    pass


class TempoEsgotado(DownloadError):
    pass


class ErroApi(DownloadError):
    def __init__(self, msg: str, status_code: int | None = None):
        super().__init__(msg)
        self.status_code = status_code


class LimiteRequisicoes(ErroApi):
    """HTTP 429 persistente mesmo após o backoff do cliente."""


class FalhaPdf(DownloadError):
    def __init__(self, chave: str, detalhe: str = ""):
        super().__init__(f"Falha ao baixar PDF {chave}" + (f": {detalhe}" if detalhe else ""))
        self.chave = chave


class DownloadCancelado(Exception):
    """Sinal cooperativo de cancelamento; nunca é gravado como erro."""


class RunNaoEncontrado(LookupError):
    pass


class OperacaoInvalida(ValueError):
    pass


_PADROES = [
    (re.compile(r"pkcs12|mac verify|could not deserialize|senha incorreta", re.I), "Certificado digital inválido ou senha incorreta"),
    (re.compile(r"ssl|tls|handshake", re.I), "Erro de conexão SSL/TLS com a API Nacional"),
    (re.compile(r"connection refused|name or service not known|failed to resolve|max retries exceeded", re.I), "API Nacional indisponível - sem conexão"),
    (re.compile(r"timed? ?out|timeout", re.I), "Timeout na comunicação com a API Nacional"),
    (re.compile(r"connection reset|connection aborted|remote end closed", re.I), "Conexão interrompida com a API Nacional"),
]


def mensagem_amigavel(exc: BaseException, limite: int = 200) -> str:
    """Converte a exceção em texto exibível ao usuário."""
    if isinstance(exc, DownloadError):
        msg = str(exc) or exc.__class__.__name__
    else:
        bruto = str(exc) or exc.__class__.__name__
        msg = bruto
        for padrao, amigavel in _PADROES:
            if padrao.search(bruto):
                msg = amigavel
                break
    msg = msg.strip()
    if len(msg) > limite:
        msg = msg[: limite - 3] + "..."
    return msg
