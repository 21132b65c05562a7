from contextlib import contextmanager

from src.cert.pfx_utils import pem_temporarios
from src.models import TipoDocumento
from src.ws.cte_client import CteClient
from src.ws.nfse_client import NfseClient

CLIENTES = {TipoDocumento.NFSE.value: NfseClient, TipoDocumento.CTE.value: CteClient}


@contextmanager
def abrir_cliente(tipo: str, certificado, ctx):
    """PFX -> par PEM temporário -> cliente mTLS. Os PEMs são apagados na saída."""
    cls = CLIENTES[TipoDocumento(tipo).value]
    with pem_temporarios(certificado.pfx_path, certificado.senha_cripto) as cert_tuple:
        with cls(cert_tuple, ctx) as cliente:
            yield cliente
