"""
Session repository - persists UploadSession records as JSON.
"""

import json
from typing import Optional

from filerelay.core.errors import SessionNotFound
from filerelay.models.session import UploadSession
from filerelay.store.base import MetadataStore
from filerelay.store.keys import session_key


class SessionRepository:
    """Load and save upload sessions in the metadata store."""

    def __init__(self, store: MetadataStore):
        self.store = store

    async def find(self, session_id: str) -> Optional[UploadSession]:
        raw = await self.store.get(session_key(session_id))
        if raw is None:
            return None
        return UploadSession.from_dict(json.loads(raw))

    async def load(self, session_id: str) -> UploadSession:
        """
        Load a session.

        Raises:
            SessionNotFound: If no record exists
        """
        session = await self.find(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def save(self, session: UploadSession) -> None:
        await self.store.put(session_key(session.session_id), json.dumps(session.to_dict()))
