"""
Document store interface.

Blobs live in an external store; the engine only needs to know whether a
document of a given type exists for an obligation and when it arrived.
``SqlDocumentStore`` keeps that metadata in ``obligation_documents``.

Usage:
    from compliance_engine.integrations.document_store import get_document_store

    store = get_document_store()
    if not store.has_document(instance_id, "sales_register"):
        ...
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from compliance_engine.models import db
from compliance_engine.models.obligation import ObligationDocument

logger = logging.getLogger(__name__)


class DocumentStore:
    """Interface consumed by the obligation tracker."""

    def has_document(self, instance_id: int, doctype: str) -> bool:
        raise NotImplementedError

    def document_metadata(self, instance_id: int, doctype: str) -> dict | None:
        """Return ``{"uploaded_at", "verified"}`` or None when nothing was uploaded."""
        raise NotImplementedError

    def record(self, instance_id: int, doctype: str, storage_ref: str,
               verified: bool = False, uploaded_by: str | None = None) -> dict:
        raise NotImplementedError

    def uploaded_doctypes(self, instance_id: int) -> set[str]:
        raise NotImplementedError


class SqlDocumentStore(DocumentStore):
    """Metadata in the engine's own database; ``storage_ref`` points at the blob.

    ``record`` adds to the caller's session without committing, so the
    upload and any status change it triggers land in one transaction.
    """

    def _get(self, instance_id: int, doctype: str) -> ObligationDocument | None:
        return db.session.execute(
            select(ObligationDocument).where(
                ObligationDocument.instance_id == instance_id,
                ObligationDocument.doctype == doctype,
            )
        ).scalar_one_or_none()

    def has_document(self, instance_id: int, doctype: str) -> bool:
        return self._get(instance_id, doctype) is not None

    def document_metadata(self, instance_id: int, doctype: str) -> dict | None:
        doc = self._get(instance_id, doctype)
        if doc is None:
            return None
        return {
            "uploaded_at": doc.uploaded_at.isoformat() if doc.uploaded_at else None,
            "verified": doc.verified,
        }

    def record(self, instance_id: int, doctype: str, storage_ref: str,
               verified: bool = False, uploaded_by: str | None = None) -> dict:
        doc = self._get(instance_id, doctype)
        if doc is None:
            doc = ObligationDocument(instance_id=instance_id, doctype=doctype)
            db.session.add(doc)
        doc.storage_ref = storage_ref
        doc.verified = bool(verified)
        doc.uploaded_by = uploaded_by
        doc.uploaded_at = datetime.now(timezone.utc)
        db.session.flush()
        logger.debug("Document recorded: %s for obligation %s", doctype, instance_id,
                     extra={"instance_id": instance_id})
        return doc.to_dict()

    def uploaded_doctypes(self, instance_id: int) -> set[str]:
        return set(db.session.execute(
            select(ObligationDocument.doctype).where(ObligationDocument.instance_id == instance_id)
        ).scalars())


def get_document_store() -> DocumentStore:
    return current_app.extensions["document_store"]
