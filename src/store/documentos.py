"""Gravação idempotente de documentos, chaveada por ``chave_acesso``."""
from datetime import datetime, date

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError

from src.models import Documento


class DocumentSink:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def gravar(self, *, chave_acesso: str, contabilidade_id: int, empresa_id: int, tipo_documento: str,
               nsu: int, xml: str, schema: str | None = None, resumo=None) -> bool:
        """Insere o documento; chave já conhecida não altera nada. Retorna True se inseriu."""
        valores = dict(
            chave_acesso=chave_acesso, contabilidade_id=contabilidade_id, empresa_id=empresa_id,
            tipo_documento=tipo_documento, nsu=nsu, schema=schema, xml=xml, created_at=datetime.utcnow(),
        )
        if resumo is not None:
            valores.update(
                direcao=resumo.direcao, numero=resumo.numero, valor=resumo.valor,
                data_emissao=resumo.data_emissao, contraparte_cnpj=resumo.contraparte_cnpj,
                contraparte_nome=(resumo.contraparte_nome or "")[:255] or None,
            )
        with self._session_factory() as db:
            existe = db.execute(select(Documento.id).where(Documento.chave_acesso == chave_acesso)).scalar_one_or_none()
            if existe is not None:
                return False
            try:
                db.execute(insert(Documento).values(**valores))
                db.commit()
            except IntegrityError:
                # corrida com outro worker gravando a mesma chave
                db.rollback()
                return False
            return True

    def pdf_path(self, chave_acesso: str) -> str | None:
        with self._session_factory() as db:
            return db.execute(select(Documento.pdf_path).where(Documento.chave_acesso == chave_acesso)).scalar_one_or_none()

    def anexar_pdf(self, chave_acesso: str, caminho: str) -> None:
        with self._session_factory() as db:
            db.execute(update(Documento).where(Documento.chave_acesso == chave_acesso).values(pdf_path=caminho))
            db.commit()

    def contar(self, empresa_id: int, tipo_documento: str) -> int:
        with self._session_factory() as db:
            return db.execute(
                select(func.count(Documento.id)).where(Documento.empresa_id == empresa_id,
                                                       Documento.tipo_documento == tipo_documento)
            ).scalar_one()

    def menor_nsu_no_periodo(self, empresa_id: int, tipo_documento: str, inicio: date | None, fim: date | None) -> int | None:
        q = select(func.min(Documento.nsu)).where(Documento.empresa_id == empresa_id,
                                                  Documento.tipo_documento == tipo_documento)
        if inicio:
            q = q.where(Documento.data_emissao >= inicio)
        if fim:
            q = q.where(Documento.data_emissao <= fim)
        with self._session_factory() as db:
            return db.execute(q).scalar_one_or_none()
