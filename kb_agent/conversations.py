"""Conversation (thread) storage used by the agent orchestrator."""
import abc
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from kb_agent.db import session_scope
from kb_agent.errors import StoreError
from kb_agent.models import Thread, ThreadMessage


class ConversationStore(abc.ABC):
    @abc.abstractmethod
    def create_conversation(self, owner_id: Optional[str] = None, title: Optional[str] = None) -> str: ...

    @abc.abstractmethod
    def exists(self, conversation_id: str) -> bool: ...

    @abc.abstractmethod
    def recent_messages(self, conversation_id: str, limit: int) -> List[Dict[str, str]]:
        """Last `limit` messages as chat dicts ({"role", "content"}), oldest first."""

    @abc.abstractmethod
    def append_message(self, conversation_id: str, role: str, content: str) -> None: ...


class SqlConversationStore(ConversationStore):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_conversation(self, owner_id: Optional[str] = None, title: Optional[str] = None) -> str:
        try:
            with session_scope(self.session_factory) as db:
                thread = Thread(owner_id=owner_id, title=title)
                db.add(thread)
                db.flush()
                return thread.id
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def exists(self, conversation_id: str) -> bool:
        try:
            with session_scope(self.session_factory) as db:
                return db.get(Thread, conversation_id) is not None
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def recent_messages(self, conversation_id: str, limit: int) -> List[Dict[str, str]]:
        if limit <= 0:
            return []
        stmt = (
            select(ThreadMessage.role, ThreadMessage.content)
            .where(ThreadMessage.thread_id == conversation_id)
            .order_by(ThreadMessage.id.desc())
            .limit(limit)
        )
        try:
            with session_scope(self.session_factory) as db:
                rows = db.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        return [{"role": role, "content": content} for role, content in reversed(rows)]

    def append_message(self, conversation_id: str, role: str, content: str) -> None:
        try:
            with session_scope(self.session_factory) as db:
                db.add(ThreadMessage(thread_id=conversation_id, role=role, content=content))
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
