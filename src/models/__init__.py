from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import String, Integer, BigInteger, Boolean, Date, DateTime, Text, ForeignKey, Index, Numeric, UniqueConstraint
from datetime import datetime, date
from decimal import Decimal
import enum

Base = declarative_base()


class TipoDocumento(str, enum.Enum):
    NFSE = "nfse"
    CTE = "cte"


class StatusDownload(str, enum.Enum):
    PENDENTE = "pendente"
    EXECUTANDO = "executando"
    CONCLUIDO = "concluido"
    ERRO = "erro"
    CANCELADO = "cancelado"


class Gatilho(str, enum.Enum):
    MANUAL = "manual"
    AGENDADO = "agendado"


class ModoDownload(str, enum.Enum):
    COMPLETO = "completo"
    NOVAS = "novas"  # somente documentos após o cursor


STATUS_ATIVOS = (StatusDownload.PENDENTE.value, StatusDownload.EXECUTANDO.value)
STATUS_TERMINAIS = (StatusDownload.CONCLUIDO.value, StatusDownload.ERRO.value, StatusDownload.CANCELADO.value)


class Contabilidade(Base):
    __tablename__ = "contabilidades"
    id: Mapped[int] = mapped_column(primary_key=True)
    nome: Mapped[str] = mapped_column(String(255))
    ativo: Mapped[bool] = mapped_column(Boolean, default=True)


class Empresa(Base):
    __tablename__ = "empresas"
    id: Mapped[int] = mapped_column(primary_key=True)
    contabilidade_id: Mapped[int] = mapped_column(ForeignKey("contabilidades.id"), index=True)
    cnpj: Mapped[str] = mapped_column(String(14), index=True)
    razao_social: Mapped[str] = mapped_column(String(200), default="")
    ativo: Mapped[bool] = mapped_column(Boolean, default=True)


class Certificado(Base):
    __tablename__ = "certificados"
    id: Mapped[int] = mapped_column(primary_key=True)
    empresa_id: Mapped[int] = mapped_column(ForeignKey("empresas.id"), index=True)
    tipo: Mapped[str] = mapped_column(String(2), default="A1")
    pfx_path: Mapped[str] = mapped_column(Text)                 # caminho do .pfx
    senha_cripto: Mapped[str] = mapped_column(Text)             # armazene cifrada (placeholder)
    valido_ate: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ativo: Mapped[bool] = mapped_column(Boolean, default=True)


class CursorNSU(Base):
    __tablename__ = "cursor_nsu"
    __table_args__ = (UniqueConstraint("empresa_id", "tipo_documento", name="uq_cursor_empresa_tipo"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    empresa_id: Mapped[int] = mapped_column(ForeignKey("empresas.id"))
    tipo_documento: Mapped[str] = mapped_column(String(10))
    ultimo_nsu: Mapped[int] = mapped_column(BigInteger, default=0)
    max_nsu: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Documento(Base):
    __tablename__ = "documentos"
    id: Mapped[int] = mapped_column(primary_key=True)
    chave_acesso: Mapped[str] = mapped_column(String(80), unique=True)
    contabilidade_id: Mapped[int] = mapped_column(ForeignKey("contabilidades.id"), index=True)
    empresa_id: Mapped[int] = mapped_column(ForeignKey("empresas.id"), index=True)
    tipo_documento: Mapped[str] = mapped_column(String(10))
    nsu: Mapped[int] = mapped_column(BigInteger)
    schema: Mapped[str | None] = mapped_column(String(30), nullable=True)   # NFSE|EVENTO|procCTe|resEvento...
    direcao: Mapped[str] = mapped_column(String(10), default="terceiro")    # emitido|recebido|terceiro
    xml: Mapped[str] = mapped_column(Text)
    pdf_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    numero: Mapped[str | None] = mapped_column(String(20), nullable=True)
    valor: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    data_emissao: Mapped[date | None] = mapped_column(Date, nullable=True)
    contraparte_cnpj: Mapped[str | None] = mapped_column(String(14), nullable=True)
    contraparte_nome: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

Index("ix_documentos_empresa_tipo_nsu", Documento.empresa_id, Documento.tipo_documento, Documento.nsu)


class DownloadLog(Base):
    __tablename__ = "download_logs"
    id: Mapped[int] = mapped_column(primary_key=True)
    contabilidade_id: Mapped[int] = mapped_column(ForeignKey("contabilidades.id"), index=True)
    empresa_id: Mapped[int] = mapped_column(ForeignKey("empresas.id"))
    empresa_nome: Mapped[str | None] = mapped_column(String(255), nullable=True)
    empresa_cnpj: Mapped[str | None] = mapped_column(String(14), nullable=True)
    tipo_documento: Mapped[str] = mapped_column(String(10))
    status: Mapped[str] = mapped_column(String(12), default=StatusDownload.PENDENTE.value)
    gatilho: Mapped[str] = mapped_column(String(10), default=Gatilho.MANUAL.value)
    modo: Mapped[str] = mapped_column(String(10), default=ModoDownload.COMPLETO.value)
    periodo_inicio: Mapped[date | None] = mapped_column(Date, nullable=True)
    periodo_fim: Mapped[date | None] = mapped_column(Date, nullable=True)
    progresso: Mapped[int] = mapped_column(Integer, default=0)
    total_esperado: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_docs: Mapped[int] = mapped_column(Integer, default=0)
    docs_novos: Mapped[int] = mapped_column(Integer, default=0)
    total_pdf: Mapped[int] = mapped_column(Integer, default=0)
    erros_pdf: Mapped[int] = mapped_column(Integer, default=0)
    etapa: Mapped[str | None] = mapped_column(String(255), nullable=True)
    erro: Mapped[str | None] = mapped_column(Text, nullable=True)
    ultimo_nsu: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    certificado_vencido: Mapped[bool] = mapped_column(Boolean, default=False)
    retentavel: Mapped[bool] = mapped_column(Boolean, default=True)
    rodada: Mapped[int] = mapped_column(Integer, default=0)
    substituido_por: Mapped[int | None] = mapped_column(Integer, nullable=True)
    criado_em: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    iniciado_em: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finalizado_em: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

Index("ix_download_logs_empresa_tipo_status", DownloadLog.empresa_id, DownloadLog.tipo_documento, DownloadLog.status)


class Configuracao(Base):
    __tablename__ = "configuracoes"
    id: Mapped[int] = mapped_column(primary_key=True)
    chave: Mapped[str] = mapped_column(String(100), unique=True)
    valor: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
