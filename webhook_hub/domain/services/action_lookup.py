"""
Action store and lookup

The ``actions`` table is authoritative; the in-memory registry is only a
fallback for keys the store has never heard of. A logically removed row
hides the fallback, so a removal can never be undone by a stale registry.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.exceptions import NotFoundException, ErrorCode
from webhook_hub.core.logging import get_logger
from webhook_hub.db.models.action import Action
from webhook_hub.domain.action_registry import ActionConfig, ActionRegistry

logger = get_logger(__name__)


class LookupSource(str, enum.Enum):
    STORE = "store"        # active rows in the store
    REMOVED = "removed"    # only logically removed rows: explicitly empty
    FALLBACK = "fallback"  # nothing stored, registry answered


@dataclass(frozen=True)
class ActionLookupResult:
    source: LookupSource
    configs: list[ActionConfig] = field(default_factory=list)

    @property
    def is_removed(self) -> bool:
        return self.source == LookupSource.REMOVED


@dataclass
class ActionSyncResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def action_to_config(row: Action) -> ActionConfig:
    return ActionConfig(
        provider=row.provider,
        event_type=row.event_type,
        action_id=row.action_id,
        priority=row.priority,
        is_async=row.is_async,
        max_attempts=row.max_attempts,
        retry_delays=tuple(row.retry_delays or ()),
    )


class ActionStore:
    """Persistence for action configs, including logical removal"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def rows_for(self, provider: str, event_type: str, action_id: str | None = None) -> list[Action]:
        """All rows for the key, removed ones included, ordered by (priority, action_id)"""
        query = select(Action).where(
            Action.provider == provider,
            Action.event_type == event_type,
        )
        if action_id is not None:
            query = query.where(Action.action_id == action_id)
        result = await self.db.execute(query.order_by(Action.priority, Action.action_id))
        return list(result.scalars().all())

    async def get(self, provider: str, event_type: str, action_id: str) -> Action | None:
        rows = await self.rows_for(provider, event_type, action_id)
        return rows[0] if rows else None

    async def sync(self, registry: ActionRegistry, update_existing: bool = True) -> ActionSyncResult:
        """
        Persist declared configs.

        Removed rows are skipped: a removal made by an operator survives
        every redeploy.
        """
        outcome = ActionSyncResult()
        for config in registry.all_actions():
            row = await self.get(config.provider, config.event_type, config.action_id)
            key = f"{config.provider}:{config.event_type}:{config.action_id}"

            if row is not None and row.removed:
                outcome.skipped.append(key)
                continue
            if row is not None and not update_existing:
                outcome.skipped.append(key)
                continue

            if row is None:
                row = Action(
                    provider=config.provider,
                    event_type=config.event_type,
                    action_id=config.action_id,
                )
                self.db.add(row)
                outcome.created.append(key)
            else:
                outcome.updated.append(key)

            row.priority = config.priority
            row.is_async = config.is_async
            row.max_attempts = config.max_attempts
            row.retry_delays = list(config.retry_delays)

        await self.db.commit()
        logger.info(
            "Actions synced",
            extra_data={
                "created": len(outcome.created),
                "updated": len(outcome.updated),
                "skipped": len(outcome.skipped),
            }
        )
        return outcome

    async def save(self, config: ActionConfig) -> Action:
        """Store or overwrite one config; an existing removal is left alone"""
        row = await self.get(config.provider, config.event_type, config.action_id)
        if row is None:
            row = Action(provider=config.provider, event_type=config.event_type, action_id=config.action_id)
            self.db.add(row)
        row.priority = config.priority
        row.is_async = config.is_async
        row.max_attempts = config.max_attempts
        row.retry_delays = list(config.retry_delays)
        await self.db.commit()
        return row

    async def remove(self, provider: str, event_type: str, action_id: str) -> Action:
        """
        Logically remove an action. If it was never stored, a removed row is
        created so the registry fallback stays hidden.
        """
        row = await self.get(provider, event_type, action_id)
        if row is None:
            row = Action(provider=provider, event_type=event_type, action_id=action_id)
            self.db.add(row)
        row.deleted_at = datetime.now(timezone.utc)
        await self.db.commit()

        logger.info(
            "Action removed",
            extra_data={"provider": provider, "event_type": event_type, "action_id": action_id}
        )
        return row

    async def restore(self, provider: str, event_type: str, action_id: str) -> Action:
        row = await self.get(provider, event_type, action_id)
        if row is None:
            raise NotFoundException(
                "Action",
                f"{provider}:{event_type}:{action_id}",
                error_code=ErrorCode.ACTION_NOT_CONFIGURED,
            )
        row.deleted_at = None
        await self.db.commit()
        return row


class ActionLookup:
    """Resolve which actions run for (provider, event_type)"""

    def __init__(self, db: AsyncSession, registry: ActionRegistry):
        self.store = ActionStore(db)
        self.registry = registry

    async def resolve(self, provider: str, event_type: str) -> ActionLookupResult:
        rows = await self.store.rows_for(provider, event_type)

        active = [row for row in rows if not row.removed]
        if active:
            return ActionLookupResult(LookupSource.STORE, [action_to_config(row) for row in active])

        if rows:
            logger.info(
                "All stored actions removed, not falling back to registry",
                extra_data={"provider": provider, "event_type": event_type, "removed": len(rows)}
            )
            return ActionLookupResult(LookupSource.REMOVED, [])

        return ActionLookupResult(LookupSource.FALLBACK, self.registry.actions_for(provider, event_type))

    async def actions_for(self, provider: str, event_type: str) -> list[ActionConfig]:
        return (await self.resolve(provider, event_type)).configs

    async def resolve_action(self, provider: str, event_type: str, action_id: str) -> ActionLookupResult:
        """Three-way lookup for a single action id"""
        row = await self.store.get(provider, event_type, action_id)
        if row is not None and not row.removed:
            return ActionLookupResult(LookupSource.STORE, [action_to_config(row)])
        if row is not None:
            return ActionLookupResult(LookupSource.REMOVED, [])

        config = self.registry.find_action_config(provider, event_type, action_id)
        return ActionLookupResult(LookupSource.FALLBACK, [config] if config else [])

    async def find_action_config(self, provider: str, event_type: str, action_id: str) -> ActionConfig | None:
        result = await self.resolve_action(provider, event_type, action_id)
        return result.configs[0] if result.configs else None
