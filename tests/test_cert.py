import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from src.cert.pfx_utils import pem_temporarios, pfx_to_pem_tempfiles
from src.core.errors import CertificadoError


def _pfx(senha: str, dias: int = 365) -> bytes:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    nome = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "EMPRESA TESTE:11222333000101")])
    agora = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(nome).issuer_name(nome).public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(agora - timedelta(days=400))
        .not_valid_after(agora + timedelta(days=dias))
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(b"teste", key, cert, None, BestAvailableEncryption(senha.encode()))


def test_pem_temporarios_apagados_na_saida(tmp_path):
    caminho = tmp_path / "a1.pfx"
    caminho.write_bytes(_pfx("1234"))
    with pem_temporarios(str(caminho), "1234") as (cert_path, key_path):
        assert open(cert_path, "rb").read().startswith(b"-----BEGIN CERTIFICATE-----")
        assert b"PRIVATE KEY" in open(key_path, "rb").read()
    assert not os.path.exists(cert_path)
    assert not os.path.exists(key_path)


def test_senha_errada():
    with pytest.raises(CertificadoError, match="senha incorreta") as e:
        pfx_to_pem_tempfiles(_pfx("certa"), "errada")
    assert e.value.vencido is False


def test_certificado_vencido():
    with pytest.raises(CertificadoError, match="vencido") as e:
        pfx_to_pem_tempfiles(_pfx("1234", dias=-1), "1234")
    assert e.value.vencido is True


def test_arquivo_inexistente(tmp_path):
    with pytest.raises(CertificadoError, match="não encontrado"):
        with pem_temporarios(str(tmp_path / "nao-existe.pfx"), "x"):
            pass


def test_falha_ao_gravar_chave_remove_o_pem_do_certificado(monkeypatch):
    criados = []
    original = tempfile.mkstemp

    def mkstemp(*a, **kw):
        if criados:
            raise OSError("sem espaço em disco")
        fd, path = original(*a, **kw)
        criados.append(path)
        return fd, path

    monkeypatch.setattr(tempfile, "mkstemp", mkstemp)
    with pytest.raises(OSError):
        pfx_to_pem_tempfiles(_pfx("1234"), "1234")
    assert len(criados) == 1
    assert not os.path.exists(criados[0])
