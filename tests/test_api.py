import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.core.errors import FalhaRede
from tests.conftest import cnpj_de, esperar, pagina, semear


@pytest.fixture
def client(motor):
    app.state.motor = motor
    yield TestClient(app)
    del app.state.motor


def _terminados(motor, ids):
    return all(motor.tracker.status(i) in ("concluido", "erro", "cancelado") for i in ids)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_executar_e_consultar(client, motor, session_factory, api):
    ids = semear(session_factory, 2)
    api.paginas[cnpj_de(session_factory, ids[0])] = [pagina([1, 2], tem_mais=False)]

    r = client.post("/api/downloads/executar", json={"contabilidade_id": 1, "periodo_inicio": "2024-01-01",
                                                     "periodo_fim": "2024-01-31"})
    assert r.status_code == 200
    corpo = r.json()
    assert corpo["iniciados"] == 2
    assert esperar(lambda: _terminados(motor, corpo["run_ids"]))

    r = client.get("/api/downloads", params={"contabilidade_id": 1, "tipo_documento": "nfse"})
    assert r.status_code == 200
    dados = r.json()
    assert dados["resumo"]["total"] == 2
    assert dados["resumo"]["total_docs"] == 2
    # concluído com documentos vem antes do concluído vazio
    assert [d["total_docs"] for d in dados["downloads"]] == [2, 0]
    assert dados["downloads"][0]["periodo_inicio"] == "2024-01-01"


def test_periodo_invertido_e_rejeitado(client, session_factory):
    semear(session_factory, 1)
    r = client.post("/api/downloads/executar", json={"contabilidade_id": 1, "periodo_inicio": "2024-02-01",
                                                     "periodo_fim": "2024-01-01"})
    assert r.status_code == 422


def test_cancelar_e_retomar_inexistente(client):
    assert client.post("/api/downloads/999/cancelar").status_code == 404
    assert client.post("/api/downloads/999/retomar").status_code == 404


def test_retomar_download_em_erro(client, motor, session_factory, api):
    (emp,) = semear(session_factory, 1)
    api.paginas[cnpj_de(session_factory, emp)] = [FalhaRede("API Nacional indisponível")]
    lote = motor.execute_for_all(1)
    assert lote.aguardar(10)
    (run_id,) = lote.run_ids

    r = client.post(f"/api/downloads/{run_id}/retomar")
    assert r.status_code == 200
    (novo,) = r.json()["run_ids"]
    assert esperar(lambda: _terminados(motor, [novo]))
    assert client.post(f"/api/downloads/{run_id}/retomar").status_code == 409
    assert client.post(f"/api/downloads/{novo}/cancelar").status_code == 409


def test_cancelar_todos_e_limpar_historico(client, motor, session_factory, api):
    semear(session_factory, 3)
    api.atraso = 30
    r = client.post("/api/downloads/executar", json={"contabilidade_id": 1})
    ids = r.json()["run_ids"]
    assert esperar(lambda: motor.tracker.status(ids[0]) == "executando")

    r = client.post("/api/downloads/cancelar-todos", params={"contabilidade_id": 1})
    assert r.json() == {"cancelados": 3}
    assert esperar(lambda: motor.resumo_lote(1)["em_andamento"] is False)

    r = client.delete("/api/downloads/historico", params={"contabilidade_id": 1})
    assert r.json() == {"removidos": 3}
    assert client.get("/api/downloads", params={"contabilidade_id": 1}).json()["downloads"] == []


def test_cursor(client, motor, session_factory):
    (emp,) = semear(session_factory, 1)
    params = {"empresa_id": emp, "tipo_documento": "cte"}
    assert client.get("/api/nsu/cursor", params=params).status_code == 404

    motor.cursores.avancar(emp, "cte", 321, max_nsu=400)
    r = client.get("/api/nsu/cursor", params=params)
    assert r.json()["ultimo_nsu"] == 321
    assert r.json()["max_nsu"] == 400

    assert client.post("/api/nsu/cursor/reset", params=params).json()["ultimo_nsu"] == 0
    assert client.get("/api/nsu/cursor", params=params).json()["ultimo_nsu"] == 0
