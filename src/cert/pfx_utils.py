from contextlib import contextmanager
from datetime import datetime, timezone
import os
import tempfile

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption

from src.core.errors import CertificadoError


def carregar_pfx(pfx_bytes: bytes, password: str):
    try:
        key, cert, chain = pkcs12.load_key_and_certificates(pfx_bytes, password.encode("utf-8") if password else None)
    except ValueError as e:
        raise CertificadoError("Certificado digital inválido ou senha incorreta") from e
    if not key or not cert:
        raise CertificadoError("PFX sem chave privada ou certificado")
    return key, cert, chain


def pfx_to_pem_tempfiles(pfx_bytes: bytes, password: str, agora: datetime | None = None) -> tuple[str, str]:
    key, cert, chain = carregar_pfx(pfx_bytes, password)
    vence = cert.not_valid_after_utc
    if vence < (agora or datetime.now(timezone.utc)):
        raise CertificadoError(f"Certificado digital vencido em {vence:%d/%m/%Y}", vencido=True)
    certs = [cert.public_bytes(Encoding.PEM)]
    for c in chain or []:
        certs.append(c.public_bytes(Encoding.PEM))
    cert_path = _gravar_temporario(b"".join(certs))
    try:
        key_path = _gravar_temporario(key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()))
    except OSError:
        os.remove(cert_path)
        raise
    return cert_path, key_path


def _gravar_temporario(conteudo: bytes) -> str:
    fd, path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(conteudo)
    except OSError:
        os.remove(path)
        raise
    return path


@contextmanager
def pem_temporarios(pfx_path: str, password: str):
    """Yield (cert_path, key_path); os arquivos são removidos na saída, com ou sem erro."""
    try:
        with open(pfx_path, "rb") as f:
            pfx = f.read()
    except OSError as e:
        raise CertificadoError(f"Arquivo do certificado não encontrado: {os.path.basename(pfx_path)}") from e
    cert_tuple = pfx_to_pem_tempfiles(pfx, password)
    try:
        yield cert_tuple
    finally:
        for p in cert_tuple:
            if os.path.exists(p):
                os.remove(p)
