"""Data subject request endpoint tests."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from backend.guardiao.app.config import settings
from backend.guardiao.app.dsar import DsarService, parse_tipo_direito
from backend.guardiao.app.errors import BadRequestError
from backend.guardiao.app.schemas.dsar import UpdateDsarStatusRequest
from backend.guardiao.db.models import AuditLog, StatusDsar, TipoDireito, User, UserRole

from .utils import auth_headers, create_controladora, create_user, login, login_headers


def _request(**overrides) -> dict:
    payload = {
        "tipo": "ACESSO_AOS_DADOS",
        "nome": "  Fernanda Costa  ",
        "cpf": "123.456.789-01",
        "email": "Fernanda@Example.com",
        "telefone": "(11) 98888-7777",
    }
    payload.update(overrides)
    return payload


async def _open(client, headers=None, **overrides) -> dict:
    response = await client.post("/dsar", json=_request(**overrides), headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()


_RESPONSE = "Seguem os dados pessoais tratados pela controladora em anexo."


@pytest.mark.asyncio
async def test_anonymous_request_gets_sequential_protocols(client, db_engine, email_outbox):
    first = await _open(client)
    second = await _open(client, tipo="confirmacao_existencia")

    year = datetime.now().year
    assert first["protocolo"] == f"DSAR-{year}-000001"
    assert second["protocolo"] == f"DSAR-{year}-000002"
    assert first["prazoLegal"] == "15 dias corridos"
    assert first["message"] == "Solicitação registrada com sucesso"

    deadline = datetime.fromisoformat(first["dataPrevistaResposta"])
    remaining = deadline - datetime.now(deadline.tzinfo)
    assert timedelta(days=14, hours=23) < remaining <= timedelta(days=15)

    notifications = [item for item in email_outbox if item["type"] == "dsar_notification"]
    assert [item["protocolo"] for item in notifications] == [first["protocolo"], second["protocolo"]]
    assert notifications[0]["email"] == settings.dsar.default_dpo_email
    assert notifications[0]["titular_nome"] == "Fernanda Costa"


@pytest.mark.asyncio
async def test_authenticated_request_notifies_tenant_dpo(client, db_session, email_outbox):
    controladora = await create_controladora(db_session, email_dpo="privacidade@loja.com.br")
    await create_user(
        db_session, email="titular@example.com", tipo=UserRole.TITULAR, controladora_id=controladora.id
    )
    headers = await login_headers(client, "titular@example.com")

    created = await _open(client, headers=headers)
    assert email_outbox[-1]["email"] == "privacidade@loja.com.br"

    mine = await client.get("/dsar/my", headers=headers)
    assert mine.status_code == 200
    body = mine.json()
    assert body["meta"]["limit"] == 10
    ticket = body["data"][0]
    assert ticket["protocolo"] == created["protocolo"]
    assert ticket["titularNome"] == "Fernanda Costa"
    assert ticket["titularCpf"] == "12345678901"
    assert ticket["titularEmail"] == "fernanda@example.com"
    assert ticket["titularTelefone"] == "11988887777"
    assert ticket["controladoraId"] == controladora.id
    assert ticket["diasDesdeAbertura"] == 0
    assert ticket["prazoAtendido"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"tipo": "RECLAMACAO_ANPD"}, "Este direito deve ser exercido diretamente na ANPD (www.gov.br/anpd)"),
        ({"tipo": "CORRECAO_DE_DADOS", "descricao": "curta"}, None),
        ({"tipo": "ANONIMIZACAO_BLOQUEIO_ELIMINACAO", "descricao": "motivo breve"}, None),
        ({"tipo": "PORTABILIDADE", "formato": "PDF"}, None),
        ({"tipo": "DIREITO_INEXISTENTE"}, None),
        ({"cpf": "123.456.789"}, "CPF deve conter exatamente 11 dígitos numéricos"),
    ],
)
async def test_request_validation_by_type(client, db_engine, overrides, message):
    response = await client.post("/dsar", json=_request(**overrides))
    assert response.status_code == 400
    if message is not None:
        assert response.json()["message"] == message


@pytest.mark.asyncio
async def test_anpd_complaint_always_fails(client, db_engine):
    response = await client.post(
        "/dsar",
        json=_request(tipo="reclamacao_anpd", descricao="Descrição completa e detalhada do problema"),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "DSAR_ANPD_ONLY"


@pytest.mark.asyncio
async def test_portability_accepts_supported_format(client, db_engine):
    created = await _open(client, tipo="PORTABILIDADE", formato="csv")
    assert created["protocolo"].startswith("DSAR-")


@pytest.mark.asyncio
async def test_dpo_answers_request_once(client, db_session, email_outbox):
    controladora = await create_controladora(db_session)
    await create_user(db_session, email="dpo@example.com", tipo=UserRole.DPO, controladora_id=controladora.id)
    dpo_headers = await login_headers(client, "dpo@example.com")
    created = await _open(client)

    listing = await client.get("/dsar", headers=dpo_headers, params={"status": "ABERTO"})
    ticket_id = listing.json()["data"][0]["id"]

    answered = await client.patch(
        f"/dsar/{ticket_id}",
        headers=dpo_headers,
        json={"status": "RESPONDIDO", "respostaDpo": _RESPONSE, "anexoUrl": "https://files.example.com/r.pdf"},
    )
    assert answered.status_code == 200
    data = answered.json()["data"]
    assert data["status"] == "RESPONDIDO"
    assert data["respostaDpo"] == _RESPONSE
    assert data["dataResposta"] is not None
    assert data["prazoAtendido"] is True

    sent = email_outbox[-1]
    assert sent["type"] == "dsar_response"
    assert sent["email"] == "fernanda@example.com"
    assert sent["protocolo"] == created["protocolo"]

    again = await client.patch(
        f"/dsar/{ticket_id}",
        headers=dpo_headers,
        json={"status": "EM_ANALISE", "respostaDpo": _RESPONSE},
    )
    assert again.status_code == 400
    assert again.json()["message"] == "Esta solicitação já foi respondida ou arquivada"


@pytest.mark.asyncio
async def test_denial_requires_reason(client, db_session):
    await create_user(db_session, email="root@example.com", tipo=UserRole.ROOT)
    headers = await login_headers(client, "root@example.com")
    await _open(client)
    ticket_id = (await client.get("/dsar", headers=headers)).json()["data"][0]["id"]

    without_reason = await client.patch(
        f"/dsar/{ticket_id}",
        headers=headers,
        json={"status": "INDEFERIDO", "respostaDpo": _RESPONSE},
    )
    assert without_reason.status_code == 400

    short_answer = await client.patch(
        f"/dsar/{ticket_id}",
        headers=headers,
        json={"status": "RESPONDIDO", "respostaDpo": "curta"},
    )
    assert short_answer.status_code == 400
    assert short_answer.json()["error"] == "VALIDATION_ERROR"

    denied = await client.patch(
        f"/dsar/{ticket_id}",
        headers=headers,
        json={
            "status": "INDEFERIDO",
            "respostaDpo": _RESPONSE,
            "motivoIndeferimento": "Titular não comprovou identidade",
        },
    )
    assert denied.status_code == 200
    assert denied.json()["data"]["motivoIndeferimento"] == "Titular não comprovou identidade"


@pytest.mark.asyncio
async def test_listing_filters_and_tenant_scope(client, db_session):
    own = await create_controladora(db_session, nome="Própria")
    other = await create_controladora(db_session, nome="Outra")
    await create_user(db_session, email="dpo@example.com", tipo=UserRole.DPO, controladora_id=own.id)
    await create_user(db_session, email="t1@example.com", tipo=UserRole.TITULAR, controladora_id=own.id)
    await create_user(db_session, email="t2@example.com", tipo=UserRole.TITULAR, controladora_id=other.id)

    t1 = auth_headers((await login(client, "t1@example.com"))["access_token"])
    t2 = auth_headers((await login(client, "t2@example.com"))["access_token"])
    await _open(client, headers=t1, cpf="11111111111")
    await _open(client, headers=t2, cpf="22222222222")
    await _open(client, cpf="33333333333", tipo="REVOGACAO_CONSENTIMENTO")

    dpo_headers = await login_headers(client, "dpo@example.com")
    visible = await client.get("/dsar", headers=dpo_headers)
    cpfs = sorted(item["titularCpf"] for item in visible.json()["data"])
    assert cpfs == ["11111111111", "33333333333"]

    by_cpf = await client.get("/dsar", headers=dpo_headers, params={"cpf": "333.333"})
    assert [item["titularCpf"] for item in by_cpf.json()["data"]] == ["33333333333"]

    by_tipo = await client.get("/dsar", headers=dpo_headers, params={"tipo": "revogacao_consentimento"})
    assert by_tipo.json()["meta"]["total"] == 1

    foreign_id = (await client.get("/dsar/my", headers=t2)).json()["data"][0]["id"]
    denied = await client.get(f"/dsar/{foreign_id}", headers=dpo_headers)
    assert denied.status_code == 403

    own_id = (await client.get("/dsar/my", headers=t1)).json()["data"][0]["id"]
    stolen = await client.get(f"/dsar/{own_id}", headers=t2)
    assert stolen.status_code == 403
    mine = await client.get(f"/dsar/{own_id}", headers=t1)
    assert mine.status_code == 200


@pytest.mark.asyncio
async def test_unknown_ticket_is_not_found(client, db_session):
    await create_user(db_session, email="root@example.com", tipo=UserRole.ROOT)
    headers = await login_headers(client, "root@example.com")

    response = await client.get("/dsar/inexistente", headers=headers)
    assert response.status_code == 404
    assert response.json()["message"] == "DSAR inexistente não encontrada"


@pytest.mark.asyncio
async def test_response_download(client, db_session):
    await create_user(db_session, email="root@example.com", tipo=UserRole.ROOT)
    headers = await login_headers(client, "root@example.com")
    attachment = settings.dsar.attachments_dir / "resposta.pdf"
    attachment.write_bytes(b"%PDF-1.4 resposta")

    await _open(client, cpf="44444444444")
    await _open(client, cpf="55555555555")
    await _open(client, cpf="66666666666")
    tickets = {
        item["titularCpf"]: item["id"]
        for item in (await client.get("/dsar", headers=headers)).json()["data"]
    }

    with_file = tickets["44444444444"]
    await client.patch(
        f"/dsar/{with_file}",
        headers=headers,
        json={"status": "RESPONDIDO", "respostaDpo": _RESPONSE, "anexoPath": "resposta.pdf"},
    )
    download = await client.get(f"/dsar/{with_file}/response", headers=headers)
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert download.content == b"%PDF-1.4 resposta"

    with_url = tickets["55555555555"]
    await client.patch(
        f"/dsar/{with_url}",
        headers=headers,
        json={"status": "RESPONDIDO", "respostaDpo": _RESPONSE, "anexoUrl": "https://files.example.com/r.pdf"},
    )
    redirect = await client.get(f"/dsar/{with_url}/response", headers=headers)
    assert redirect.status_code == 307
    assert redirect.headers["location"] == "https://files.example.com/r.pdf"

    nothing = await client.get(f"/dsar/{tickets['66666666666']}/response", headers=headers)
    assert nothing.status_code == 404
    assert nothing.json()["message"] == "Nenhum anexo disponível"


@pytest.mark.asyncio
async def test_attachment_outside_folder_is_never_served(client, db_session, tmp_path):
    await create_user(db_session, email="root@example.com", tipo=UserRole.ROOT)
    headers = await login_headers(client, "root@example.com")
    secret = tmp_path / "segredo.pdf"
    secret.write_bytes(b"nao deve sair")
    await _open(client)
    ticket_id = (await client.get("/dsar", headers=headers)).json()["data"][0]["id"]

    await client.patch(
        f"/dsar/{ticket_id}",
        headers=headers,
        json={"status": "RESPONDIDO", "respostaDpo": _RESPONSE, "anexoPath": "../segredo.pdf"},
    )
    response = await client.get(f"/dsar/{ticket_id}/response", headers=headers)
    assert response.status_code == 404


def test_parse_tipo_direito():
    assert parse_tipo_direito(" portabilidade ") is TipoDireito.PORTABILIDADE
    with pytest.raises(BadRequestError):
        parse_tipo_direito("qualquer")


def test_terminal_statuses():
    assert StatusDsar.RESPONDIDO.is_terminal
    assert StatusDsar.ARQUIVADO.is_terminal
    assert not StatusDsar.ABERTO.is_terminal
    assert not StatusDsar.EM_ANALISE.is_terminal


@pytest.mark.asyncio
async def test_concurrent_answers_have_a_single_winner(client, db_session, session_factory):
    root = await create_user(db_session, email="root@example.com", tipo=UserRole.ROOT)
    await _open(client)
    headers = await login_headers(client, "root@example.com")
    ticket_id = (await client.get("/dsar", headers=headers)).json()["data"][0]["id"]

    async with session_factory() as first, session_factory() as second:
        first_service, second_service = DsarService(first), DsarService(second)
        first_ticket = await first_service.get(ticket_id)
        second_ticket = await second_service.get(ticket_id)
        first_root = await first.get(User, root.id)
        second_root = await second.get(User, root.id)

        answered = await first_service.update_status(
            first_ticket,
            UpdateDsarStatusRequest(status=StatusDsar.RESPONDIDO, resposta_dpo=_RESPONSE),
            first_root,
        )
        assert answered.status is StatusDsar.RESPONDIDO

        with pytest.raises(BadRequestError):
            await second_service.update_status(
                second_ticket,
                UpdateDsarStatusRequest(
                    status=StatusDsar.INDEFERIDO,
                    resposta_dpo="Resposta divergente enviada em paralelo.",
                    motivo_indeferimento="Titular não identificado",
                ),
                second_root,
            )

    async with session_factory() as session:
        stored = await DsarService(session).get(ticket_id)
        assert stored.status is StatusDsar.RESPONDIDO
        assert stored.resposta_dpo == _RESPONSE
        assert stored.motivo_indeferimento is None


@pytest.mark.asyncio
async def test_protocol_conflict_is_retried_for_authenticated_requester(
    client, db_session, session_factory, monkeypatch
):
    titular = await create_user(db_session, email="titular@example.com", tipo=UserRole.TITULAR)
    headers = await login_headers(client, "titular@example.com")
    await _open(client)

    original = DsarService._next_sequence
    calls = []

    async def _stale_sequence(self, year):
        calls.append(year)
        if len(calls) == 1:
            return 1
        return await original(self, year)

    monkeypatch.setattr(DsarService, "_next_sequence", _stale_sequence)
    created = await _open(client, headers=headers)

    assert len(calls) == 2
    assert created["protocolo"].endswith("-000002")
    async with session_factory() as session:
        result = await session.execute(
            select(AuditLog).where(AuditLog.acao == "DSAR_CREATED", AuditLog.usuario_id == titular.id)
        )
        assert result.scalars().one().dados["protocolo"] == created["protocolo"]
