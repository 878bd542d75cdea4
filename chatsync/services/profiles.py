import logging
from collections import OrderedDict
from typing import Dict, Iterable

from chatsync.errors import PersistenceFailure
from chatsync.models.user import User
from chatsync.services.gateway import PersistenceGateway


logger = logging.getLogger(__name__)


class ProfileCache:
    """Bounded, least-recently-used profile cache owned by one session.

    It dies with the session, so profiles never leak across users.
    """

    def __init__(self, gateway: PersistenceGateway, max_size: int = 256) -> None:
        self._gateway = gateway
        self._max_size = max_size
        self._entries: "OrderedDict[str, User]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        wanted = list(dict.fromkeys(user_ids))
        missing = [u for u in wanted if u not in self._entries]
        if missing:
            try:
                for user in await self._gateway.get_users(missing):
                    self._store(user)
            except PersistenceFailure as exc:
                # callers render without profiles rather than failing
                logger.warning("Profile lookup for %d users failed: %s", len(missing), exc)
        found: Dict[str, User] = {}
        for user_id in wanted:
            user = self._entries.get(user_id)
            if user is not None:
                self._entries.move_to_end(user_id)
                found[user_id] = user
        return found

    def clear(self) -> None:
        self._entries.clear()

    def _store(self, user: User) -> None:
        self._entries[user.id] = user
        self._entries.move_to_end(user.id)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
