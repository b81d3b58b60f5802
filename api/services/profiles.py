import logging
from typing import Optional

from api.channels import format_phone_number, split_address
from api.models import Resolution, User
from api.services.storage import StorageService

logger = logging.getLogger(__name__)

class ProfileService:
    """Resolves inbound addresses and thread ids to subscribed users"""

    def __init__(self, storage_service: StorageService, conversations_id_prefix: str = "relas-"):
        self.storage = storage_service
        self.conversations_id_prefix = conversations_id_prefix

    async def resolve_address(self, address: str) -> Resolution:
        """Resolve a phone address, with or without a `whatsapp:` prefix"""
        _, phone = split_address(address)
        phone = format_phone_number(phone)
        logger.info(f"Looking for user with phone: {phone}")
        user = await self.storage.get_user_by_phone(phone)
        return await self._gate(user, phone)

    async def resolve_thread(self, conversation_sid: str) -> Resolution:
        """Resolve a Conversations thread named `<prefix><user id>`"""
        user_id = conversation_sid
        if user_id.startswith(self.conversations_id_prefix):
            user_id = user_id[len(self.conversations_id_prefix):]
        return await self.resolve_user_id(user_id)

    async def resolve_user_id(self, user_id: str) -> Resolution:
        user = await self.storage.get_user_by_id(user_id)
        return await self._gate(user, user_id)

    async def _gate(self, user: Optional[User], lookup_key: str) -> Resolution:
        if user is None:
            logger.info(f"No user found for {lookup_key}")
            return Resolution(reason="not_found")

        if not user.is_subscribed:
            logger.info(f"User {user.id} exists but is not subscribed")
            return Resolution(reason="not_subscribed")

        context = await self.storage.get_user_context(user.id)
        logger.info(f"Resolved user {user.id} for {lookup_key}")
        return Resolution(user=user, context=context)
