"""Tenant-scoped data access.

``TenantScopedRepository`` is the single interceptor through which
application code reads and writes tenant-owned rows. The tenant predicate is
derived from the caller's ``AuthorizationContext`` and appended to every
statement, so a query that forgets to filter by tenant still only sees the
caller's tenants.
"""

import logging
import uuid
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import false, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from src.services.authorization import (
    AuthorizationContext,
    TenantNotFoundError,
    WriteOperation,
    authorize_read,
    record_super_admin_action,
    require_write,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

PROTECTED_FIELDS = frozenset({"id", "tenant_id", "created_at", "created_by"})


class TenantScopeError(Exception):
    """Raised when a scoped write violates a storage constraint."""
    pass


class TenantScopedRepository(Generic[ModelT]):
    """
    Policy-enforcing repository for one tenant-owned model.

    Args:
        session: Async database session
        model: Mapped class carrying a ``tenant_id`` column
        resource_name: Human-readable name used in error messages and audit rows
    """

    def __init__(self, session: AsyncSession, model: Type[ModelT], resource_name: Optional[str] = None):
        if not hasattr(model, "tenant_id"):
            raise TypeError(f"{model.__name__} is not tenant-owned")
        self.db = session
        self.model = model
        self.resource_name = resource_name or model.__name__
        self.resource_type = model.__tablename__

    def scope(
        self,
        query: Select,
        ctx: AuthorizationContext,
        tenant_id: Optional[uuid.UUID] = None,
    ) -> Select:
        """Constrain ``query`` to the tenants ``ctx`` may read."""
        column = self.model.tenant_id

        if tenant_id is not None:
            if not authorize_read(ctx, tenant_id):
                return query.where(false())
            query = query.where(column == tenant_id)
        elif ctx.active_tenant_id is not None:
            query = query.where(column == ctx.active_tenant_id)

        if not ctx.unrestricted:
            query = query.where(column.in_(list(ctx.tenant_ids)))
        return query

    async def list(
        self,
        ctx: AuthorizationContext,
        *criteria: Any,
        tenant_id: Optional[uuid.UUID] = None,
        offset: int = 0,
        limit: int = 100,
        order_by: Any = None,
    ) -> List[ModelT]:
        query = self.scope(select(self.model), ctx, tenant_id)
        if criteria:
            query = query.where(*criteria)
        query = query.order_by(order_by if order_by is not None else self.model.created_at.desc())
        query = query.offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count(
        self,
        ctx: AuthorizationContext,
        *criteria: Any,
        tenant_id: Optional[uuid.UUID] = None,
    ) -> int:
        query = self.scope(select(func.count()).select_from(self.model), ctx, tenant_id)
        if criteria:
            query = query.where(*criteria)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    async def get(self, ctx: AuthorizationContext, record_id: uuid.UUID) -> ModelT:
        """Fetch one row; rows of other tenants are reported as missing."""
        query = self.scope(select(self.model).where(self.model.id == record_id), ctx)
        result = await self.db.execute(query)
        record = result.scalar_one_or_none()
        if record is None:
            logger.debug(f"{self.resource_name} {record_id} not visible to caller {ctx.user_id}")
            raise TenantNotFoundError(f"{self.resource_name} not found")
        return record

    async def create(
        self,
        ctx: AuthorizationContext,
        tenant_id: uuid.UUID,
        data: Dict[str, Any],
    ) -> ModelT:
        require_write(ctx, tenant_id, WriteOperation.INSERT, self.resource_name)

        values = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        record = self.model(**values)
        record.tenant_id = tenant_id
        if hasattr(record, "created_by"):
            record.created_by = ctx.user_id

        try:
            self.db.add(record)
            await self.db.flush()
            record_super_admin_action(
                self.db, ctx, f"{self.resource_type}.insert",
                tenant_id=tenant_id,
                resource_type=self.resource_type,
                resource_id=record.id,
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Integrity error creating {self.resource_name}: {e}")
            raise TenantScopeError(f"Failed to create {self.resource_name.lower()} due to a constraint violation")

        logger.info(f"Created {self.resource_name} {record.id} for tenant {tenant_id}")
        return record

    async def update(
        self,
        ctx: AuthorizationContext,
        record_id: uuid.UUID,
        data: Dict[str, Any],
    ) -> ModelT:
        record = await self.get(ctx, record_id)
        require_write(ctx, record.tenant_id, WriteOperation.UPDATE, self.resource_name)

        changes = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS and hasattr(record, k)}
        for key, value in changes.items():
            setattr(record, key, value)
        if hasattr(record, "updated_by"):
            record.updated_by = ctx.user_id

        try:
            record_super_admin_action(
                self.db, ctx, f"{self.resource_type}.update",
                tenant_id=record.tenant_id,
                resource_type=self.resource_type,
                resource_id=record.id,
                details={"fields": sorted(changes)},
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Integrity error updating {self.resource_name} {record_id}: {e}")
            raise TenantScopeError(f"Failed to update {self.resource_name.lower()} due to a constraint violation")

        return record

    async def delete(self, ctx: AuthorizationContext, record_id: uuid.UUID) -> None:
        record = await self.get(ctx, record_id)
        require_write(ctx, record.tenant_id, WriteOperation.DELETE, self.resource_name)

        tenant_id = record.tenant_id
        await self.db.delete(record)
        record_super_admin_action(
            self.db, ctx, f"{self.resource_type}.delete",
            tenant_id=tenant_id,
            resource_type=self.resource_type,
            resource_id=record_id,
        )
        await self.db.commit()
        logger.info(f"Deleted {self.resource_name} {record_id} from tenant {tenant_id}")
