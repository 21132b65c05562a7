import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from src.core.config import INTERVALO_MINIMO_INFINITO
from src.core.errors import FalhaRede
from src.core.retomada import job_id
from src.core.servico import MotorDownload
from src.models import StatusDownload
from tests.conftest import cnpj_de, gravar_config, pagina, semear


class Relogio:
    def __init__(self):
        self.t = 1000.0
        self.esperas: list[float] = []

    def __call__(self):
        return self.t

    def dormir(self, evento, segundos):
        self.esperas.append(segundos)
        self.t += segundos


@pytest.fixture
def relogio():
    return Relogio()


@pytest.fixture
def motor_retomada(session_factory, api, relogio, tmp_path):
    gravar_config(session_factory, delay_entre_empresas=0, delay_entre_paginas=0, delay_entre_pdfs=0,
                  baixar_pdf=False, auto_retomada_nfse=True, auto_retomada_tempo_nfse="00:00:00")
    m = MotorDownload(session_factory, fabrica_cliente=api.fabrica, scheduler=BackgroundScheduler(),
                      pasta_pdf=str(tmp_path / "pdf"), relogio=relogio, dormir=relogio.dormir,
                      intervalo_ativos=0.01)
    yield m
    m.desligar()


def _erro_inicial(motor, empresa_id, cnpj):
    return motor.tracker.criar(contabilidade_id=1, empresa_id=empresa_id, empresa_cnpj=cnpj, tipo_documento="nfse",
                               status=StatusDownload.ERRO.value, erro="API Nacional indisponível", retentavel=True)


def test_modo_infinito_respeita_intervalo_minimo(motor_retomada, session_factory, api, relogio):
    gravar_config(session_factory, retomada_infinita_nfse=True)
    (emp,) = semear(session_factory, 1)
    cnpj = cnpj_de(session_factory, emp)
    api.paginas[cnpj] = [FalhaRede("falha 1"), FalhaRede("falha 2"), pagina([1], tem_mais=False)]
    _erro_inicial(motor_retomada, emp, cnpj)

    assert motor_retomada.retomada.executar_rodadas(1, "nfse") == 3
    inicios = motor_retomada.retomada.inicios_rodada[(1, "nfse")]
    assert len(inicios) == 3
    assert all(b - a >= INTERVALO_MINIMO_INFINITO for a, b in zip(inicios, inicios[1:]))
    assert motor_retomada.tracker.erros(1, "nfse") == []
    # histórico padrão mostra só a última tentativa
    (visivel,) = motor_retomada.download_status(1)
    assert visivel.status == "concluido"
    assert visivel.rodada == 3
    assert visivel.gatilho == "agendado"


def test_modo_limitado_para_no_maximo_de_rodadas(motor_retomada, session_factory, api):
    gravar_config(session_factory, max_rodadas_retomada_nfse=2)
    (emp,) = semear(session_factory, 1)
    cnpj = cnpj_de(session_factory, emp)
    api.paginas[cnpj] = [FalhaRede(f"falha {i}") for i in range(5)]
    _erro_inicial(motor_retomada, emp, cnpj)

    assert motor_retomada.retomada.executar_rodadas(1, "nfse") == 2
    (restante,) = motor_retomada.tracker.erros(1, "nfse")
    assert restante.rodada == 2
    assert len(api.chamadas) == 2


def test_erro_de_certificado_nao_entra_na_retomada(motor_retomada, session_factory, api):
    semear(session_factory, 1, vencidos=(1,))
    lote = motor_retomada.execute_for_all(1)
    assert lote.aguardar(10)
    assert motor_retomada.retomada.executar_rodadas(1, "nfse") == 0
    assert api.chamadas == []


def test_retomada_desativada_nao_roda(motor_retomada, session_factory, api):
    gravar_config(session_factory, auto_retomada_nfse=False)
    (emp,) = semear(session_factory, 1)
    _erro_inicial(motor_retomada, emp, cnpj_de(session_factory, emp))
    assert motor_retomada.retomada.executar_rodadas(1, "nfse") == 0


def test_fim_de_lote_com_erros_agenda_uma_unica_retomada(motor_retomada, session_factory, api):
    (emp,) = semear(session_factory, 1)
    api.paginas[cnpj_de(session_factory, emp)] = [FalhaRede("falha")]
    lote = motor_retomada.execute_for_all(1)
    assert lote.aguardar(10)

    sched = motor_retomada.scheduler
    assert sched.get_job(job_id(1, "nfse")) is not None
    assert motor_retomada.resumo_lote(1, "nfse")["retomada_em_curso"] is True
    # um segundo agendamento para o mesmo par é recusado
    assert motor_retomada.retomada.agendar(1, "nfse") is False

    motor_retomada.cancel_all_downloads(1)
    assert sched.get_job(job_id(1, "nfse")) is None


def test_cancelar_todos_interrompe_o_loop(motor_retomada, session_factory, api, relogio):
    gravar_config(session_factory, retomada_infinita_nfse=True)
    (emp,) = semear(session_factory, 1)
    cnpj = cnpj_de(session_factory, emp)
    api.paginas[cnpj] = [FalhaRede(f"falha {i}") for i in range(50)]
    _erro_inicial(motor_retomada, emp, cnpj)
    coord = motor_retomada.retomada

    dormir = relogio.dormir

    def dormir_e_cancelar(evento, segundos):
        dormir(evento, segundos)
        if len(coord.inicios_rodada[(1, "nfse")]) >= 2:
            motor_retomada.cancel_all_downloads(1)

    coord._dormir = dormir_e_cancelar
    rodadas = coord.executar_rodadas(1, "nfse")
    assert 2 <= rodadas < 50
    assert coord.em_curso(1, "nfse") is False
