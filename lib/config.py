import os
from typing import Literal
from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()

class Settings(BaseSettings):
    # OpenAI settings
    openai_api_key: str = os.getenv('OPENAI_API_KEY', '')
    openai_model: str = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
    openai_timeout_seconds: float = float(os.getenv('OPENAI_TIMEOUT_SECONDS', '10'))

    # Twilio settings
    twilio_account_sid: str = os.getenv('TWILIO_ACCOUNT_SID', '')
    twilio_auth_token: str = os.getenv('TWILIO_AUTH_TOKEN', '')
    twilio_phone_number: str = os.getenv('TWILIO_PHONE_NUMBER', '')
    twilio_whatsapp_number: str = os.getenv('TWILIO_WHATSAPP_NUMBER', '')
    twilio_timeout_seconds: float = float(os.getenv('TWILIO_TIMEOUT_SECONDS', '10'))

    # Supabase settings
    supabase_url: str = os.getenv('SUPABASE_URL', '')
    supabase_key: str = os.getenv('SUPABASE_KEY', '')
    supabase_timeout_seconds: float = float(os.getenv('SUPABASE_TIMEOUT_SECONDS', '10'))

    # Pipeline settings
    request_timeout_seconds: float = float(os.getenv('REQUEST_TIMEOUT_SECONDS', '14'))
    dispatch_failure_policy: Literal['record_as_sent', 'mark_failed'] = os.getenv(
        'DISPATCH_FAILURE_POLICY', 'record_as_sent')
    event_dedup_ttl_hours: int = int(os.getenv('EVENT_DEDUP_TTL_HOURS', '72'))
    welcome_message_delay_seconds: float = float(os.getenv('WELCOME_MESSAGE_DELAY_SECONDS', '2'))
    conversations_id_prefix: str = os.getenv('CONVERSATIONS_ID_PREFIX', 'relas-')

def get_settings() -> Settings:
    return Settings()
