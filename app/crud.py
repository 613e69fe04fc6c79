"""
CRUD operations (Create, Read, Update, Delete)
Database query functions for the outbound mutation queue
"""
import json
from datetime import datetime
from sqlalchemy.orm import Session
from app.models import QueuedMutation
from typing import Dict, List, Optional


def add_mutation(
    db: Session,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[bytes] = None,
    enqueued_at: Optional[datetime] = None,
) -> QueuedMutation:
    """
    Persist a mutation and return it with its assigned id
    """
    mutation = QueuedMutation(
        method=method.upper(),
        url=url,
        headers=json.dumps(dict(headers or {})),
        body=body,
        enqueued_at=enqueued_at or datetime.utcnow(),
    )
    db.add(mutation)
    db.commit()
    db.refresh(mutation)
    return mutation


def get_mutation(db: Session, mutation_id: int) -> Optional[QueuedMutation]:
    """
    Get a queued mutation by ID
    """
    return db.query(QueuedMutation).filter(QueuedMutation.id == mutation_id).first()


def get_mutations(db: Session, limit: Optional[int] = None) -> List[QueuedMutation]:
    """
    Get queued mutations in FIFO order (enqueue time, then id)
    """
    query = db.query(QueuedMutation).order_by(QueuedMutation.enqueued_at, QueuedMutation.id)
    if limit:
        query = query.limit(limit)
    return query.all()


def count_mutations(db: Session) -> int:
    return db.query(QueuedMutation).count()


def delete_mutation(db: Session, mutation_id: int) -> bool:
    """
    Delete a queued mutation, True if it existed
    """
    deleted = db.query(QueuedMutation).filter(QueuedMutation.id == mutation_id).delete()
    db.commit()
    return deleted > 0


def delete_all_mutations(db: Session) -> int:
    deleted = db.query(QueuedMutation).delete()
    db.commit()
    return deleted
