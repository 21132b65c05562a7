from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    DB_URL: str = "sqlite:///storage/dfe.db"

    STORAGE_BASE_PATH: str = "storage/docs"
    CERTS_BASE_PATH: str = "storage/certs"

    AMBIENTE: str = "PRODUCAO"  # HOMOLOG|PRODUCAO

    # API Nacional da NFS-e (ADN): distribuição por NSU e DANFSe
    NFSE_ADN_URL: str = "https://adn.nfse.gov.br/contribuintes/DFe"
    NFSE_DANFSE_URL: str = "https://adn.nfse.gov.br/danfse"

    # Distribuição DF-e do CT-e (SOAP). WSDL só é usado se CTE_USE_WSDL=True.
    CTE_DIST_URL_PRODUCAO: str = "https://www1.cte.fazenda.gov.br/CTeDistribuicaoDFe/CTeDistribuicaoDFe.asmx"
    CTE_DIST_URL_HOMOLOG: str = "https://hom1.cte.fazenda.gov.br/CTeDistribuicaoDFe/CTeDistribuicaoDFe.asmx"
    CTE_USE_WSDL: bool = False
    # UF do autor (código IBGE) enviada no distDFeInt do CT-e
    CTE_CUF_AUTOR: int = 35

    HTTP_TIMEOUT_SEC: int = 45
    PDF_TIMEOUT_SEC: int = 30

    # intervalo do job agendado (sync incremental de todas as contabilidades)
    JOB_INTERVAL_MINUTES: int = 60

    API_MAX_ATTEMPTS: int = 5
    API_BACKOFF_BASE_SEC: int = 5
    API_BACKOFF_CAP_SEC: int = 80
    PDF_MAX_ATTEMPTS: int = 2
    # Opcional: caminho para bundle de certificados raiz ICP-Brasil (para substituir certifi)
    DFE_CA_BUNDLE: str | None = None
    # Ativa logs detalhados
    DFE_DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Folga (s) além do deadline antes de considerar um download travado
    STALL_GRACE_SEC: int = 120

    class Config:
        env_file = ".env"

settings = Settings()
