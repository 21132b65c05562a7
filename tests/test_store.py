import threading
from datetime import date, datetime, timedelta

from src.core.xml_resumo import ResumoDocumento
from src.models import StatusDownload
from src.store.cursor_nsu import CursorStore
from src.store.documentos import DocumentSink
from src.store.download_log import RunTracker
from tests.conftest import semear


def test_cursor_so_avanca(session_factory):
    (emp,) = semear(session_factory, 1)
    cur = CursorStore(session_factory)
    assert cur.obter(emp, "nfse") is None
    assert cur.avancar(emp, "nfse", 100, max_nsu=150) is True
    assert cur.avancar(emp, "nfse", 90) is False
    assert cur.obter(emp, "nfse") == 100
    assert cur.avancar(emp, "nfse", 100) is True
    assert cur.detalhe(emp, "nfse")["max_nsu"] == 150
    # tipos de documento têm cursores independentes
    assert cur.obter(emp, "cte") is None

    cur.resetar(emp, "nfse")
    assert cur.obter(emp, "nfse") == 0


def test_cursor_concorrente_fica_no_maior(session_factory):
    (emp,) = semear(session_factory, 1)
    cur = CursorStore(session_factory)
    valores = list(range(1, 41))
    threads = [threading.Thread(target=cur.avancar, args=(emp, "cte", v)) for v in reversed(valores)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert cur.obter(emp, "cte") == 40


def test_sink_idempotente_por_chave(session_factory):
    (emp,) = semear(session_factory, 1)
    sink = DocumentSink(session_factory)
    resumo = ResumoDocumento(numero="12", data_emissao=date(2024, 2, 3), direcao="recebido",
                             contraparte_cnpj="99888777000166", contraparte_nome="Prestador")
    kw = dict(chave_acesso="A" * 50, contabilidade_id=1, empresa_id=emp, tipo_documento="nfse", nsu=7, xml="<x/>")
    assert sink.gravar(**kw, resumo=resumo) is True
    assert sink.gravar(**kw) is False
    assert sink.contar(emp, "nfse") == 1
    assert sink.menor_nsu_no_periodo(emp, "nfse", date(2024, 2, 1), date(2024, 2, 28)) == 7
    assert sink.menor_nsu_no_periodo(emp, "nfse", date(2024, 3, 1), None) is None

    assert sink.pdf_path("A" * 50) is None
    sink.anexar_pdf("A" * 50, "/tmp/a.pdf")
    assert sink.pdf_path("A" * 50) == "/tmp/a.pdf"


def _criar(tracker, emp, status, **kw):
    return tracker.criar(contabilidade_id=1, empresa_id=emp, tipo_documento="nfse", status=status, **kw)


def test_transicoes_condicionais(session_factory):
    (emp,) = semear(session_factory, 1)
    t = RunTracker(session_factory)
    run = _criar(t, emp, StatusDownload.PENDENTE.value)

    assert t.atualizar(run, etapa="x") is False
    assert t.marcar_executando(run) is True
    assert t.marcar_executando(run) is False
    assert t.atualizar(run, etapa="Consultando") is True
    assert t.finalizar(run, StatusDownload.CANCELADO) is True
    # quem chega depois do cancelamento não sobrescreve
    assert t.finalizar(run, StatusDownload.CONCLUIDO, total_docs=3) is False
    assert t.status(run) == "cancelado"
    assert t.obter(run).finalizado_em is not None


def test_cancelar_todos_so_afeta_ativos_da_contabilidade(session_factory):
    emp1, emp2 = semear(session_factory, 2)
    (outra,) = semear(session_factory, 1, contabilidade_id=2)
    t = RunTracker(session_factory)
    pend = _criar(t, emp1, "pendente")
    execu = _criar(t, emp2, "executando")
    feito = _criar(t, emp1, "concluido")
    alheio = t.criar(contabilidade_id=2, empresa_id=outra, tipo_documento="nfse", status="pendente")

    assert sorted(t.cancelar_todos(1)) == sorted([pend, execu])
    assert [t.status(r) for r in (pend, execu, feito, alheio)] == ["cancelado", "cancelado", "concluido", "pendente"]


def test_listagem_ordenada(session_factory):
    (emp,) = semear(session_factory, 1)
    t = RunTracker(session_factory)
    base = datetime(2024, 5, 1, 12, 0)
    ids = {
        "cancelado": _criar(t, emp, "cancelado", criado_em=base),
        "concluido_vazio": _criar(t, emp, "concluido", total_docs=0, criado_em=base + timedelta(minutes=5)),
        "erro": _criar(t, emp, "erro", criado_em=base + timedelta(minutes=1)),
        "concluido_antigo": _criar(t, emp, "concluido", total_docs=3, criado_em=base),
        "concluido_novo": _criar(t, emp, "concluido", total_docs=1, criado_em=base + timedelta(minutes=2)),
        "pendente": _criar(t, emp, "pendente", criado_em=base),
        "executando": _criar(t, emp, "executando", criado_em=base),
    }
    ordem = [r.id for r in t.listar(1)]
    assert ordem == [ids[k] for k in ("executando", "pendente", "concluido_novo", "concluido_antigo",
                                      "concluido_vazio", "erro", "cancelado")]
    assert [r.id for r in t.listar(1, status="erro")] == [ids["erro"]]

    resumo = t.resumo(1)
    assert resumo["total"] == 7
    assert resumo["total_docs"] == 4
    assert resumo["em_andamento"] is True


def test_limpar_historico_preserva_ativos(session_factory):
    (emp,) = semear(session_factory, 1)
    t = RunTracker(session_factory)
    ativo = _criar(t, emp, "executando")
    for s in ("concluido", "erro", "cancelado"):
        _criar(t, emp, s)
    assert t.limpar_finalizados(1) == 3
    assert [r.id for r in t.listar(1)] == [ativo]


def test_erros_ignora_substituidos_e_nao_retentaveis(session_factory):
    emp1, emp2, emp3 = semear(session_factory, 3)
    t = RunTracker(session_factory)
    a = _criar(t, emp1, "erro")
    b = _criar(t, emp2, "erro", retentavel=False)
    c = _criar(t, emp3, "erro")
    t.marcar_substituido(c, a)
    assert [r.id for r in t.erros(1, "nfse")] == [a]
    assert [r.id for r in t.erros(1, "nfse", apenas_retentaveis=False)] == [a, b]
    t.descartar_retomada(a)
    assert t.erros(1, "nfse") == []
