import re
from typing import Tuple

SMS = "sms"
WHATSAPP = "whatsapp"
CONVERSATIONS = "conversations"

WHATSAPP_PREFIX = "whatsapp:"

def format_phone_number(phone: str) -> str:
    """Normalize a phone number to E.164, assuming North America for 10 digits"""
    digits = re.sub(r"\D", "", phone)

    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"

def split_address(address: str) -> Tuple[str, str]:
    """Return (channel, phone) for a possibly transport-prefixed address"""
    address = address.strip()
    if address.lower().startswith(WHATSAPP_PREFIX):
        return WHATSAPP, address[len(WHATSAPP_PREFIX):]
    return SMS, address

def format_address(phone: str, channel: str) -> str:
    """Apply the transport prefix Twilio expects for the channel"""
    _, bare = split_address(phone)
    if channel == WHATSAPP:
        return f"{WHATSAPP_PREFIX}{bare}"
    return bare

def other_channel(channel: str) -> str:
    return WHATSAPP if channel == SMS else SMS
