from __future__ import annotations

import math
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from filevault import db
from filevault.core.exceptions import TransientIOError
from filevault.models import Document

PER_PAGE = 25


class DocumentRegistry:
    """Durable catalog of finalized uploads."""

    def __init__(self, engine=None) -> None:
        self._engine = engine or db.engine

    def create(
        self,
        *,
        disk: str,
        path: str,
        original_name: str,
        extension: Optional[str],
        size: int,
        mime_type: str,
    ) -> Document:
        record = Document(
            disk=disk,
            path=path,
            original_name=original_name,
            extension=extension,
            size=size,
            mime_type=mime_type,
        )
        try:
            with Session(self._engine) as session:
                session.add(record)
                session.commit()
                session.refresh(record)
        except OperationalError as exc:
            raise TransientIOError(f"Document registry unavailable: {exc}") from exc
        return record

    def get(self, document_id: int) -> Optional[Document]:
        with Session(self._engine) as session:
            return session.get(Document, document_id)

    def get_many(self, document_ids: Iterable[int]) -> List[Document]:
        """Documents for ``document_ids`` in the order given; unknown ids are dropped."""
        ids = list(document_ids)
        if not ids:
            return []
        try:
            with Session(self._engine) as session:
                rows = session.exec(select(Document).where(Document.id.in_(ids))).all()
        except OperationalError as exc:
            raise TransientIOError(f"Document registry unavailable: {exc}") from exc
        by_id = {row.id: row for row in rows}
        return [by_id[document_id] for document_id in ids if document_id in by_id]

    def paginate(self, page: int = 1, per_page: int = PER_PAGE) -> dict:
        page = max(page, 1)
        with Session(self._engine) as session:
            total = session.exec(select(func.count(Document.id))).one()
            rows = session.exec(
                select(Document)
                .order_by(Document.created_at.desc(), Document.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            ).all()
        return {
            "data": [row.model_dump() for row in rows],
            "current_page": page,
            "last_page": max(1, math.ceil(total / per_page)),
            "per_page": per_page,
            "total": int(total),
        }
