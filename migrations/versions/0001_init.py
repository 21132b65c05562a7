"""init"""
from alembic import op
import sqlalchemy as sa
revision = "0001_init"; down_revision = None; branch_labels=None; depends_on=None

def upgrade():
    op.create_table("contabilidades",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("nome", sa.String(255), nullable=False),
        sa.Column("ativo", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table("empresas",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contabilidade_id", sa.Integer, sa.ForeignKey("contabilidades.id"), nullable=False),
        sa.Column("cnpj", sa.String(14), nullable=False),
        sa.Column("razao_social", sa.String(200), nullable=False, server_default=""),
        sa.Column("ativo", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_empresas_contabilidade_id", "empresas", ["contabilidade_id"])
    op.create_index("ix_empresas_cnpj", "empresas", ["cnpj"])
    op.create_table("certificados",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("empresa_id", sa.Integer, sa.ForeignKey("empresas.id"), nullable=False),
        sa.Column("tipo", sa.String(2), nullable=False, server_default="A1"),
        sa.Column("pfx_path", sa.Text, nullable=False),
        sa.Column("senha_cripto", sa.Text, nullable=False),
        sa.Column("valido_ate", sa.DateTime),
        sa.Column("ativo", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_certificados_empresa_id", "certificados", ["empresa_id"])
    op.create_table("cursor_nsu",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("empresa_id", sa.Integer, sa.ForeignKey("empresas.id"), nullable=False),
        sa.Column("tipo_documento", sa.String(10), nullable=False),
        sa.Column("ultimo_nsu", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("max_nsu", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("empresa_id", "tipo_documento", name="uq_cursor_empresa_tipo"),
    )
    op.create_table("documentos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("chave_acesso", sa.String(80), nullable=False, unique=True),
        sa.Column("contabilidade_id", sa.Integer, sa.ForeignKey("contabilidades.id"), nullable=False),
        sa.Column("empresa_id", sa.Integer, sa.ForeignKey("empresas.id"), nullable=False),
        sa.Column("tipo_documento", sa.String(10), nullable=False),
        sa.Column("nsu", sa.BigInteger, nullable=False),
        sa.Column("schema", sa.String(30)),
        sa.Column("direcao", sa.String(10), nullable=False, server_default="terceiro"),
        sa.Column("xml", sa.Text, nullable=False),
        sa.Column("pdf_path", sa.Text),
        sa.Column("numero", sa.String(20)),
        sa.Column("valor", sa.Numeric(15, 2)),
        sa.Column("data_emissao", sa.Date),
        sa.Column("contraparte_cnpj", sa.String(14)),
        sa.Column("contraparte_nome", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_documentos_contabilidade_id", "documentos", ["contabilidade_id"])
    op.create_index("ix_documentos_empresa_id", "documentos", ["empresa_id"])
    op.create_index("ix_documentos_empresa_tipo_nsu", "documentos", ["empresa_id", "tipo_documento", "nsu"])
    op.create_table("download_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contabilidade_id", sa.Integer, sa.ForeignKey("contabilidades.id"), nullable=False),
        sa.Column("empresa_id", sa.Integer, sa.ForeignKey("empresas.id"), nullable=False),
        sa.Column("empresa_nome", sa.String(255)),
        sa.Column("empresa_cnpj", sa.String(14)),
        sa.Column("tipo_documento", sa.String(10), nullable=False),
        sa.Column("status", sa.String(12), nullable=False, server_default="pendente"),
        sa.Column("gatilho", sa.String(10), nullable=False, server_default="manual"),
        sa.Column("modo", sa.String(10), nullable=False, server_default="completo"),
        sa.Column("periodo_inicio", sa.Date),
        sa.Column("periodo_fim", sa.Date),
        sa.Column("progresso", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_esperado", sa.Integer),
        sa.Column("total_docs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("docs_novos", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_pdf", sa.Integer, nullable=False, server_default="0"),
        sa.Column("erros_pdf", sa.Integer, nullable=False, server_default="0"),
        sa.Column("etapa", sa.String(255)),
        sa.Column("erro", sa.Text),
        sa.Column("ultimo_nsu", sa.BigInteger),
        sa.Column("certificado_vencido", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retentavel", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("rodada", sa.Integer, nullable=False, server_default="0"),
        sa.Column("substituido_por", sa.Integer),
        sa.Column("criado_em", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("iniciado_em", sa.DateTime),
        sa.Column("finalizado_em", sa.DateTime),
    )
    op.create_index("ix_download_logs_contabilidade_id", "download_logs", ["contabilidade_id"])
    op.create_index("ix_download_logs_empresa_tipo_status", "download_logs", ["empresa_id", "tipo_documento", "status"])
    op.create_table("configuracoes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("chave", sa.String(100), nullable=False, unique=True),
        sa.Column("valor", sa.Text, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

def downgrade():
    op.drop_table("configuracoes")
    op.drop_index("ix_download_logs_empresa_tipo_status", table_name="download_logs")
    op.drop_index("ix_download_logs_contabilidade_id", table_name="download_logs")
    op.drop_table("download_logs")
    op.drop_index("ix_documentos_empresa_tipo_nsu", table_name="documentos")
    op.drop_index("ix_documentos_empresa_id", table_name="documentos")
    op.drop_index("ix_documentos_contabilidade_id", table_name="documentos")
    op.drop_table("documentos")
    op.drop_table("cursor_nsu")
    op.drop_index("ix_certificados_empresa_id", table_name="certificados")
    op.drop_table("certificados")
    op.drop_index("ix_empresas_cnpj", table_name="empresas")
    op.drop_index("ix_empresas_contabilidade_id", table_name="empresas")
    op.drop_table("empresas")
    op.drop_table("contabilidades")
