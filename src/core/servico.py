"""Fachada do motor de download (``MotorDownload``).

Monta os componentes (cursor, sink, Download Log, cancelamento, worker,
dispatcher e auto-retomada) sobre uma fábrica de sessões e expõe as operações
usadas pelas rotas HTTP e pelos jobs agendados.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from src.core.cancelamento import GerenciadorCancelamento
from src.core.config import carregar_config
from src.core.dispatcher import Dispatcher, Lote
from src.core.errors import OperacaoInvalida, RunNaoEncontrado
from src.core.periodo import Periodo
from src.core.retomada import CoordenadorRetomada
from src.core.worker import CompanyWorker
from src.models import DownloadLog, Gatilho, StatusDownload, TipoDocumento
from src.settings import settings
from src.store.cursor_nsu import CursorStore
from src.store.documentos import DocumentSink
from src.store.download_log import RunTracker

logger = logging.getLogger("dfe.engine")


class MotorDownload:
    def __init__(self, session_factory=None, fabrica_cliente=None, scheduler=None, pasta_pdf: str | None = None,
                 max_workers: int = 32, **retomada_kw):
        if session_factory is None:
            from src.store.db import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.tracker = RunTracker(session_factory)
        self.cursores = CursorStore(session_factory)
        self.sink = DocumentSink(session_factory)
        self.cancelamento = GerenciadorCancelamento(self.tracker)
        self.worker = CompanyWorker(session_factory, self.tracker, self.cursores, self.sink, self.cancelamento,
                                    fabrica_cliente=fabrica_cliente, pasta_pdf=pasta_pdf)
        self.dispatcher = Dispatcher(session_factory, self.tracker, self.worker, self.cancelamento, max_workers=max_workers)
        self.scheduler = scheduler or BackgroundScheduler()
        self.retomada = CoordenadorRetomada(session_factory, self.tracker, self.dispatcher, self.cancelamento,
                                            self.scheduler, **retomada_kw)

    def iniciar(self, recuperar: bool = True) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        if recuperar:
            self.recuperar_orfaos()

    def desligar(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.dispatcher.desligar()

    # ---- despacho -----------------------------------------------------------

    def execute_for_all(self, contabilidade_id: int, empresa_ids: list[int] | None = None,
                        periodo: Periodo | None = None, tipo_documento: TipoDocumento | str = TipoDocumento.NFSE,
                        gatilho: Gatilho | str = Gatilho.MANUAL) -> Lote:
        return self.dispatcher.dispatch(contabilidade_id, empresa_ids, periodo=periodo, gatilho=gatilho,
                                        tipo_documento=tipo_documento)

    def update_all(self, contabilidade_id: int, tipo_documento: TipoDocumento | str = TipoDocumento.NFSE,
                   gatilho: Gatilho | str = Gatilho.MANUAL, empresa_ids: list[int] | None = None) -> Lote:
        """Somente documentos novos (após o cursor) para as empresas ativas."""
        return self.dispatcher.dispatch(contabilidade_id, empresa_ids, gatilho=gatilho, tipo_documento=tipo_documento,
                                        somente_novas=True)

    def retry_one(self, run_id: int) -> Lote:
        run = self.tracker.obter(run_id)
        if run is None:
            raise RunNaoEncontrado(f"Download {run_id} não encontrado")
        if run.status != StatusDownload.ERRO.value:
            raise OperacaoInvalida(f"Só downloads em erro podem ser retomados (status atual: {run.status})")
        if run.substituido_por is not None:
            raise OperacaoInvalida(f"Download {run_id} já foi retomado pelo download {run.substituido_por}")
        return self.dispatcher.redespachar([run], rodada=run.rodada + 1)

    def retry_all(self, contabilidade_id: int, tipo_documento: TipoDocumento | str = TipoDocumento.NFSE) -> Lote | None:
        tipo = TipoDocumento(tipo_documento).value
        erros = self.tracker.erros(contabilidade_id, tipo, apenas_retentaveis=False)
        if not erros:
            return None
        return self.dispatcher.redespachar(erros, rodada=max(r.rodada for r in erros) + 1)

    # ---- consulta / administração ------------------------------------------

    def download_status(self, contabilidade_id: int, tipo_documento: str | None = None, status: str | None = None,
                        incluir_substituidos: bool = False, limite: int = 500) -> list[DownloadLog]:
        return self.tracker.listar(contabilidade_id, tipo=tipo_documento, status=status,
                                   incluir_substituidos=incluir_substituidos, limite=limite)

    def resumo_lote(self, contabilidade_id: int, tipo_documento: str | None = None) -> dict:
        resumo = self.tracker.resumo(contabilidade_id, tipo_documento)
        tipos = [tipo_documento] if tipo_documento else [t.value for t in TipoDocumento]
        resumo["retomada_em_curso"] = any(self.retomada.em_curso(contabilidade_id, t) for t in tipos)
        return resumo

    def cancel_download(self, run_id: int) -> bool:
        return self.cancelamento.cancelar(run_id)

    def cancel_all_downloads(self, contabilidade_id: int) -> int:
        return self.cancelamento.cancelar_todos(contabilidade_id)

    def clear_history(self, contabilidade_id: int) -> int:
        return self.tracker.limpar_finalizados(contabilidade_id)

    def reset_cursor(self, empresa_id: int, tipo_documento: TipoDocumento | str) -> None:
        self.cursores.resetar(empresa_id, TipoDocumento(tipo_documento).value)

    def cursor(self, empresa_id: int, tipo_documento: TipoDocumento | str) -> dict | None:
        return self.cursores.detalhe(empresa_id, TipoDocumento(tipo_documento).value)

    # ---- recuperação --------------------------------------------------------

    def recuperar_orfaos(self) -> list[Lote]:
        """Runs deixados pendente/executando por um processo anterior: erro + nova rodada a partir do cursor."""
        grupos: dict[tuple[int, str], list[DownloadLog]] = defaultdict(list)
        for run in self.tracker.ativos():
            if self.cancelamento.vivo(run.id):
                continue
            if self.tracker.finalizar(run.id, StatusDownload.ERRO, erro="Interrompido: o serviço foi reiniciado",
                                      etapa="Erro: interrompido pelo reinício do serviço", retentavel=True):
                grupos[(run.contabilidade_id, run.tipo_documento)].append(run)
        lotes = []
        for (contab, tipo), runs in grupos.items():
            logger.warning(f"recuperando {len(runs)} download(s) órfão(s) contabilidade={contab} tipo={tipo}")
            lotes.append(self.dispatcher.redespachar(runs, rodada=max(r.rodada for r in runs) + 1))
        return lotes

    def verificar_travados(self) -> int:
        """Finaliza como erro runs ``executando`` além do prazo máximo sem worker vivo neste processo."""
        n = 0
        for tipo in TipoDocumento:
            with self._session_factory() as db:
                limite_seg = carregar_config(db, tipo.value).timeout_maximo() + settings.STALL_GRACE_SEC
            limite = datetime.utcnow() - timedelta(seconds=limite_seg)
            for run in self.tracker.executando_desde(limite):
                if run.tipo_documento != tipo.value or self.cancelamento.vivo(run.id):
                    continue
                if self.tracker.finalizar(run.id, StatusDownload.ERRO, erro="Download travado: tempo limite excedido",
                                          etapa="Erro: download travado", retentavel=True):
                    logger.warning(f"run={run.id} travado desde {run.iniciado_em}; finalizado como erro")
                    n += 1
        return n
