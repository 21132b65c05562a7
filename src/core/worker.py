"""Download de uma empresa: pendente -> executando -> concluido | erro | cancelado.

O worker pagina a API a partir do cursor, grava cada documento no sink,
baixa PDFs quando configurado e só avança o cursor depois que a página inteira
foi gravada. Falhas viram estado do Download Log; nada escapa para o pool.
"""
import logging
from dataclasses import dataclass, asdict
from pathlib import Path

from sqlalchemy import select

from src.core.config import DownloadConfig
from src.core.errors import (
    CertificadoError, DownloadCancelado, DownloadError, FalhaPdf, TempoEsgotado, mensagem_amigavel,
)
from src.core.periodo import Periodo
from src.core.xml_resumo import resumir
from src.models import Certificado, Empresa, ModoDownload, StatusDownload
from src.settings import settings

logger = logging.getLogger("dfe.worker")

# páginas seguidas inteiramente após o fim do período antes de parar
PAGINAS_APOS_PERIODO = 3


@dataclass
class Contadores:
    progresso: int = 0
    total_esperado: int | None = None
    total_docs: int = 0
    docs_novos: int = 0
    total_pdf: int = 0
    erros_pdf: int = 0
    ultimo_nsu: int | None = None


def certificado_ativo(db, empresa_id: int) -> Certificado | None:
    return db.execute(
        select(Certificado)
        .where(Certificado.empresa_id == empresa_id, Certificado.ativo.is_(True))
        .order_by(Certificado.id.desc())
        .limit(1)
    ).scalar_one_or_none()


class CompanyWorker:
    def __init__(self, session_factory, tracker, cursores, sink, cancelamento, fabrica_cliente=None, pasta_pdf: str | None = None):
        if fabrica_cliente is None:
            from src.ws.fabrica import abrir_cliente
            fabrica_cliente = abrir_cliente
        self._session_factory = session_factory
        self.tracker = tracker
        self.cursores = cursores
        self.sink = sink
        self.cancelamento = cancelamento
        self.fabrica_cliente = fabrica_cliente
        self.pasta_pdf = Path(pasta_pdf or Path(settings.STORAGE_BASE_PATH) / "pdf")

    def executar(self, run_id: int, config: DownloadConfig, ctx) -> str | None:
        """Executa o run; retorna o status final gravado (None se o run já não estava pendente)."""
        if not self.tracker.marcar_executando(run_id):
            logger.info(f"run={run_id} não está mais pendente; ignorado")
            self.cancelamento.remover(run_id)
            return None
        run = self.tracker.obter(run_id)
        cont = Contadores()
        try:
            with self._session_factory() as db:
                empresa = db.get(Empresa, run.empresa_id)
                certificado = certificado_ativo(db, run.empresa_id)
            if certificado is None:
                raise CertificadoError("Certificado digital não cadastrado ou inativo")
            ctx.iniciar(config.timeout_para(self.sink.contar(run.empresa_id, run.tipo_documento)))
            self._etapa(run_id, "Autenticando com o certificado digital")
            with self.fabrica_cliente(run.tipo_documento, certificado, ctx) as cliente:
                self._paginar(run, empresa, cliente, config, ctx, cont)
        except DownloadCancelado:
            self.tracker.finalizar(run_id, StatusDownload.CANCELADO, etapa="Cancelado pelo usuário", **asdict(cont))
            return self.tracker.status(run_id)
        except CertificadoError as e:
            return self._falhar(run_id, e, cont, retentavel=False, certificado_vencido=e.vencido)
        except TempoEsgotado as e:
            return self._falhar(run_id, e, cont, retentavel=True)
        except DownloadError as e:
            return self._falhar(run_id, e, cont, retentavel=e.retentavel)
        except Exception as e:
            logger.exception(f"run={run_id} erro inesperado")
            return self._falhar(run_id, e, cont, retentavel=True)
        finally:
            self.cancelamento.remover(run_id)

        if cont.total_docs:
            etapa = f"Concluído: {cont.total_docs} documento(s) encontrado(s), {cont.docs_novos} novo(s)"
        else:
            etapa = "Concluído: nenhum documento encontrado"
        if self.tracker.finalizar(run_id, StatusDownload.CONCLUIDO, etapa=etapa, **asdict(cont)):
            logger.info(f"run={run_id} empresa={run.empresa_id} concluido docs={cont.total_docs} novos={cont.docs_novos}")
            return StatusDownload.CONCLUIDO.value
        # cancelado entre a última página e a finalização
        return self.tracker.status(run_id)

    def _falhar(self, run_id, exc, cont: Contadores, retentavel: bool, certificado_vencido: bool = False) -> str:
        msg = mensagem_amigavel(exc)
        logger.warning(f"run={run_id} erro: {msg}")
        if self.tracker.finalizar(run_id, StatusDownload.ERRO, erro=msg, etapa=f"Erro: {msg}"[:255],
                                  retentavel=retentavel, certificado_vencido=certificado_vencido, **asdict(cont)):
            return StatusDownload.ERRO.value
        return self.tracker.status(run_id)

    def _etapa(self, run_id: int, etapa: str, cont: Contadores | None = None) -> None:
        campos = asdict(cont) if cont else {}
        if not self.tracker.atualizar(run_id, etapa=etapa[:255], **campos):
            # a linha saiu de executando por fora (cancelar / cancelar todos)
            raise DownloadCancelado(f"run {run_id} não está mais executando")

    def _nsu_inicial(self, run) -> int:
        cursor = self.cursores.obter(run.empresa_id, run.tipo_documento)
        inicio = cursor or 0
        if run.modo == ModoDownload.COMPLETO.value and run.rodada == 0 and (run.periodo_inicio or run.periodo_fim):
            menor = self.sink.menor_nsu_no_periodo(run.empresa_id, run.tipo_documento, run.periodo_inicio, run.periodo_fim)
            if menor is not None and menor - 1 < inicio:
                logger.info(f"run={run.id} início inteligente no NSU {menor} (cursor {inicio})")
                inicio = menor - 1
        return inicio

    def _paginar(self, run, empresa, cliente, config: DownloadConfig, ctx, cont: Contadores) -> None:
        periodo = None
        if run.modo == ModoDownload.COMPLETO.value and (run.periodo_inicio or run.periodo_fim):
            periodo = Periodo(run.periodo_inicio, run.periodo_fim)
        baixar_pdf = config.baixar_pdf and cliente.suporta_pdf
        inicio = ult = self._nsu_inicial(run)
        paginas_apos = 0
        n = 0
        while True:
            ctx.verificar()
            n += 1
            self._etapa(run.id, f"Consultando página {n} (NSU {ult})", cont)
            pagina = cliente.buscar_pagina(empresa.cnpj, ult)
            todos_apos = bool(pagina.documentos)
            for doc in pagina.documentos:
                ctx.verificar()
                resumo = resumir(run.tipo_documento, doc.xml, empresa.cnpj)
                inserido = self.sink.gravar(
                    chave_acesso=doc.chave_acesso, contabilidade_id=run.contabilidade_id, empresa_id=run.empresa_id,
                    tipo_documento=run.tipo_documento, nsu=doc.nsu, xml=doc.xml, schema=doc.schema, resumo=resumo,
                )
                cont.progresso += 1
                if periodo is None or not periodo.depois_do_fim(resumo.data_emissao):
                    todos_apos = False
                if periodo is not None and not periodo.contem(resumo.data_emissao):
                    continue
                cont.total_docs += 1
                if inserido:
                    cont.docs_novos += 1
                if baixar_pdf and not doc.evento and (inserido or not self.sink.pdf_path(doc.chave_acesso)):
                    self._baixar_pdf(run, empresa, cliente, doc.chave_acesso, config, ctx, cont)

            # página inteira gravada: só agora o cursor anda
            self.cursores.avancar(run.empresa_id, run.tipo_documento, pagina.ult_nsu, pagina.max_nsu)
            ult = max(ult, pagina.ult_nsu)
            cont.ultimo_nsu = ult
            if pagina.max_nsu:
                cont.total_esperado = max(pagina.max_nsu - inicio, cont.progresso)
            self._etapa(run.id, f"Página {n} gravada ({cont.progresso} documento(s) processado(s))", cont)

            if not pagina.tem_mais:
                break
            if periodo is not None and todos_apos:
                paginas_apos += 1
                if paginas_apos >= PAGINAS_APOS_PERIODO:
                    logger.info(f"run={run.id} {paginas_apos} páginas após o período; parando")
                    break
            else:
                paginas_apos = 0
            ctx.aguardar(config.delay_entre_paginas_ms / 1000)

    def _baixar_pdf(self, run, empresa, cliente, chave: str, config: DownloadConfig, ctx, cont: Contadores) -> None:
        self._etapa(run.id, f"Baixando PDF {chave}", cont)
        ultimo = None
        for tentativa in range(1, settings.PDF_MAX_ATTEMPTS + 1):
            try:
                conteudo = cliente.baixar_pdf(chave)
            except (CertificadoError, DownloadCancelado, TempoEsgotado):
                raise
            except DownloadError as e:
                ultimo = e
                logger.info(f"run={run.id} PDF {chave} tentativa {tentativa} falhou: {e}")
                ctx.aguardar(config.delay_entre_pdfs_ms / 1000)
                continue
            destino = self.pasta_pdf / str(run.contabilidade_id) / empresa.cnpj / f"{chave}.pdf"
            destino.parent.mkdir(parents=True, exist_ok=True)
            destino.write_bytes(conteudo)
            self.sink.anexar_pdf(chave, str(destino))
            cont.total_pdf += 1
            ctx.aguardar(config.delay_entre_pdfs_ms / 1000)
            return
        cont.erros_pdf += 1
        if config.pular_pdf_erro:
            logger.warning(f"run={run.id} PDF {chave} pulado após {settings.PDF_MAX_ATTEMPTS} tentativa(s)")
            return
        if isinstance(ultimo, FalhaPdf):
            raise ultimo
        raise FalhaPdf(chave, mensagem_amigavel(ultimo))
