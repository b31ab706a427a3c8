"""Commit helpers translating persistence conflicts into engine errors."""
from __future__ import annotations

import logging
from functools import wraps

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from procureflow import db
from procureflow.services.errors import ConcurrentModificationError

logger = logging.getLogger(__name__)


def commit_or_conflict(entity: str) -> None:
    """Commit the session; optimistic-lock and uniqueness races become
    ``ConcurrentModificationError`` after a rollback."""
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Optimistic lock conflict on %s: %s", entity, exc)
        raise ConcurrentModificationError(f"{entity} was modified concurrently; reload and retry.") from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity conflict on %s: %s", entity, exc.orig)
        raise ConcurrentModificationError(f"{entity} conflicts with a concurrent change; reload and retry.") from exc
    except Exception:
        db.session.rollback()
        raise


def rollback_on_error(func):
    """Discard staged changes when a service call fails part-way."""
    @wraps(func)
    def wrapped(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StaleDataError as exc:
            db.session.rollback()
            raise ConcurrentModificationError("Record was modified concurrently; reload and retry.") from exc
        except Exception:
            db.session.rollback()
            raise

    return wrapped
