from sqlalchemy import func
from sqlmodel import Session, select

from filevault.models import ArchiveJob, ArchiveStatus, Document


def fetch_storage_totals(session: Session) -> dict[str, int]:
    total_files = session.exec(select(func.count(Document.id))).one()
    total_bytes = session.exec(select(func.coalesce(func.sum(Document.size), 0))).one()
    pending_jobs = session.exec(
        select(func.count(ArchiveJob.id)).where(
            ArchiveJob.status.in_([ArchiveStatus.QUEUED, ArchiveStatus.PROCESSING])
        )
    ).one()

    return {
        "total_files": int(total_files or 0),
        "total_bytes": int(total_bytes or 0),
        "pending_archive_jobs": int(pending_jobs or 0),
    }
