from supabase import create_client, Client
from supabase.client import ClientOptions

from lib.config import get_settings
from lib.error_handler import AppError

def create_database_client() -> Client:
    """Create the Supabase client used by the storage service"""
    settings = get_settings()
    try:
        return create_client(
            supabase_url=settings.supabase_url,
            supabase_key=settings.supabase_key,
            options=ClientOptions(postgrest_client_timeout=settings.supabase_timeout_seconds)
        )
    except Exception as e:
        raise AppError(f"Database client initialization error: {str(e)}", status_code=500)
