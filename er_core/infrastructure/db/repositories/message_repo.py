from __future__ import annotations

from datetime import datetime
from typing import Any, cast

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from er_core.infrastructure.db.models_sqlalchemy import Message


class MessageRepository:
    def get(self, session: Session, message_id: int) -> Message | None:
        return session.get(Message, message_id)

    def add(
        self,
        session: Session,
        *,
        encounter_id: int,
        hospital_id: int,
        sender_type: str,
        content: str,
        created_by_user_id: int | None = None,
        created_by_patient_id: int | None = None,
        is_internal: bool = False,
        is_worsening: bool = False,
    ) -> Message:
        message = Message(
            encounter_id=encounter_id,
            hospital_id=hospital_id,
            sender_type=sender_type,
            content=content,
            created_by_user_id=created_by_user_id,
            created_by_patient_id=created_by_patient_id,
            is_internal=is_internal,
            is_worsening=is_worsening,
        )
        session.add(message)
        session.flush()
        return message

    def list_for_encounter(
        self,
        session: Session,
        encounter_id: int,
        *,
        include_internal: bool = True,
    ) -> list[Message]:
        stmt = select(Message).where(Message.encounter_id == encounter_id)
        if not include_internal:
            stmt = stmt.where(Message.is_internal.is_(False))
        stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc())
        return list(session.execute(stmt).scalars())

    def mark_read(self, session: Session, message_id: int, *, user_id: int | None, at: datetime) -> bool:
        stmt = (
            update(Message)
            .where(Message.id == message_id, Message.read_at.is_(None))
            .values(read_at=at, read_by_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        return cast(int, cast(Any, session.execute(stmt)).rowcount) == 1
