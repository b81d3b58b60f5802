import pytest
from unittest.mock import MagicMock

from api.channels import SMS, WHATSAPP
from api.services.sms import SMSService
from lib.error_handler import ProviderError

@pytest.mark.asyncio
async def test_send_sms_uses_phone_number(sms_service, twilio_client):
    result = await sms_service.send("+15551234567", "hello", SMS)

    assert result.success
    assert result.message_id == "SM123"
    assert result.status == "queued"
    twilio_client.send_message.assert_called_once_with("+15551234567", "hello", "+15550000000")

@pytest.mark.asyncio
async def test_send_whatsapp_applies_prefix(sms_service, twilio_client):
    result = await sms_service.send("+15551234567", "hello", WHATSAPP)

    assert result.success
    assert result.channel == WHATSAPP
    twilio_client.send_message.assert_called_once_with(
        "whatsapp:+15551234567", "hello", "whatsapp:+15550000001"
    )

@pytest.mark.asyncio
async def test_send_reports_failure_without_raising(sms_service, twilio_client):
    twilio_client.send_message.side_effect = ProviderError("Twilio error 21211", reason="Invalid phone number format.")

    result = await sms_service.send("+1555", "hello", SMS)

    assert not result.success
    assert result.error == "Invalid phone number format."

@pytest.mark.asyncio
async def test_fallback_to_whatsapp_when_sms_fails(sms_service, twilio_client):
    twilio_client.send_message.side_effect = [
        ProviderError("sms down", reason="sms down"),
        MagicMock(sid="SM456", status="queued")
    ]

    result = await sms_service.send_with_fallback("+15551234567", "hello", preferred=SMS)

    assert result.success
    assert result.channel == WHATSAPP
    assert result.message_id == "SM456"
    assert twilio_client.send_message.call_count == 2
    assert twilio_client.send_message.call_args_list[1].args[0] == "whatsapp:+15551234567"

@pytest.mark.asyncio
async def test_fallback_makes_exactly_one_extra_attempt(sms_service, twilio_client):
    twilio_client.send_message.side_effect = ProviderError("down", reason="down")

    result = await sms_service.send_with_fallback("+15551234567", "hello", preferred=WHATSAPP)

    assert not result.success
    assert twilio_client.send_message.call_count == 2
    assert "whatsapp: down" in result.error
    assert "sms: down" in result.error

@pytest.mark.asyncio
async def test_no_fallback_when_preferred_succeeds(sms_service, twilio_client):
    result = await sms_service.send_with_fallback("+15551234567", "hello")

    assert result.success
    assert result.channel == SMS
    twilio_client.send_message.assert_called_once()

@pytest.mark.asyncio
async def test_send_to_thread(sms_service, twilio_client):
    result = await sms_service.send_to_thread("relas-user-1", "hello")

    assert result.success
    assert result.message_id == "IM123"
    twilio_client.send_conversation_message.assert_called_once_with("relas-user-1", "hello")

@pytest.mark.asyncio
async def test_send_to_thread_failure(twilio_client):
    twilio_client.send_conversation_message.side_effect = RuntimeError("timeout")
    result = await SMSService(twilio_client).send_to_thread("relas-user-1", "hello")

    assert not result.success
    assert result.error == "timeout"
