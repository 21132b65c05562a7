import base64
import gzip
import logging
import random
import zlib
from dataclasses import dataclass, field

import certifi
import requests

from src.core.circuito import circuito
from src.core.errors import CertificadoError, ErroApi, FalhaRede, LimiteRequisicoes
from src.settings import settings

logger = logging.getLogger("dfe.ws")


@dataclass
class DocumentoBaixado:
    nsu: int
    chave_acesso: str
    xml: str
    schema: str | None = None
    evento: bool = False


@dataclass
class Pagina:
    documentos: list[DocumentoBaixado] = field(default_factory=list)
    ult_nsu: int = 0
    max_nsu: int | None = None
    tem_mais: bool = False


def _digits(s: str) -> str:
    return "".join(ch for ch in (s or "") if ch.isdigit())


def _ensure_nsu15(nsu) -> str:
    return _digits(str(nsu)).zfill(15)[:15]


def _inflate_doczip(b64: str) -> bytes:
    raw = base64.b64decode(b64)
    # normalmente GZip; alguns ambientes enviam zlib ou DEFLATE puro
    if len(raw) >= 2 and raw[0] == 0x1F and raw[1] == 0x8B:
        return gzip.decompress(raw)
    try:
        return zlib.decompress(raw, 15 | 32)
    except zlib.error:
        return zlib.decompress(raw, -15)


def _resolve_verify(override: str | bool | None = None):
    if override is not None:
        return override
    if settings.DFE_CA_BUNDLE:
        return settings.DFE_CA_BUNDLE  # bundle ICP-Brasil
    return certifi.where()


def _backoff(attempt: int, ctx) -> None:
    base = settings.API_BACKOFF_BASE_SEC
    cap = settings.API_BACKOFF_CAP_SEC
    wait = min(base * (2 ** (attempt - 1)), cap) * random.uniform(0.5, 1.5)
    logger.info(f"backoff tentativa={attempt} aguardando {wait:.1f}s")
    ctx.aguardar(wait)


class ClienteBase:
    """Sessão mTLS (requests) com retentativa para 429/5xx/rede.

    ``ctx`` é o RunContext da execução: dá o timeout de cada requisição e
    torna as esperas de backoff interrompíveis.
    """

    suporta_pdf = False
    nome_api = "API Nacional"

    def __init__(self, cert_tuple: tuple[str, str], ctx, verify_ca: str | bool | None = None,
                 session: requests.Session | None = None):
        self.ctx = ctx
        self.session = session or requests.Session()
        self.session.cert = cert_tuple
        self.session.verify = _resolve_verify(verify_ca)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _requisitar(self, metodo: str, url: str, *, teto: float, max_tentativas: int | None = None, **kw) -> requests.Response:
        max_tentativas = max_tentativas or settings.API_MAX_ATTEMPTS
        ultimo: Exception | None = None
        for tentativa in range(1, max_tentativas + 1):
            self.ctx.verificar()
            try:
                r = self.session.request(metodo, url, timeout=self.ctx.timeout(teto), **kw)
            except requests.exceptions.SSLError as e:
                raise FalhaRede(f"Erro de conexão SSL/TLS com a {self.nome_api}: {e}") from e
            except requests.Timeout as e:
                ultimo = FalhaRede(f"Timeout na comunicação com a {self.nome_api}")
                ultimo.__cause__ = e
            except requests.ConnectionError as e:
                ultimo = FalhaRede(f"{self.nome_api} indisponível - sem conexão ({e.__class__.__name__})")
                ultimo.__cause__ = e
            else:
                if r.status_code in (401, 403):
                    raise CertificadoError(f"Certificado não autorizado pela {self.nome_api} (HTTP {r.status_code})")
                if r.status_code == 429:
                    circuito.registrar_429()
                    ultimo = LimiteRequisicoes(f"{self.nome_api} sobrecarregada (429) - muitas requisições", 429)
                elif r.status_code >= 500:
                    ultimo = ErroApi(f"{self.nome_api} indisponível (HTTP {r.status_code})", r.status_code)
                else:
                    circuito.registrar_sucesso()
                    return r
            if settings.DFE_DEBUG:
                logger.debug(f"{metodo} {url} tentativa={tentativa}/{max_tentativas} falhou: {ultimo}")
            if tentativa < max_tentativas:
                _backoff(tentativa, self.ctx)
        raise ultimo
