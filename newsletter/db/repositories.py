from __future__ import annotations

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from newsletter.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())


class SubscriberRepository(BaseRepository[models.Subscriber]):
    model = models.Subscriber

    def confirm(self, subscriber: models.Subscriber) -> models.Subscriber:
        subscriber.status = models.SUBSCRIPTION_CONFIRMED
        self.db.flush()
        return subscriber


class NewsletterIssueRepository(BaseRepository[models.NewsletterIssue]):
    model = models.NewsletterIssue
