"""Instance settings and rules."""

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError
from .models import ServerRule, ServerSetting, dialect_insert

logger = structlog.get_logger()


async def get_settings(session: AsyncSession) -> dict[str, str]:
    result = await session.execute(select(ServerSetting))
    return {row.setting_name: row.setting_value for row in result.scalars()}


async def update_setting(session: AsyncSession, name: str, value: str) -> None:
    """Create or replace a named setting."""
    stmt = dialect_insert(session, ServerSetting).values(setting_name=name, setting_value=value)
    stmt = stmt.on_conflict_do_update(
        index_elements=[ServerSetting.setting_name],
        set_={"setting_value": value},
    )
    await session.execute(stmt)
    await session.commit()
    logger.info("Updated server setting", setting_name=name)


async def get_rules(session: AsyncSession) -> list[ServerRule]:
    result = await session.execute(select(ServerRule).order_by(ServerRule.id))
    return list(result.scalars().all())


async def upsert_rule(session: AsyncSession, text: str, rule_id: int | None = None) -> ServerRule:
    """Add a rule, or replace the text of an existing one.

    Raises:
        NotFoundError: If ``rule_id`` names an unknown rule
    """
    if rule_id is None:
        rule = ServerRule(text=text)
        session.add(rule)
    else:
        rule = await session.get(ServerRule, rule_id)
        if rule is None:
            raise NotFoundError(f"Unknown rule: {rule_id}")
        rule.text = text
    await session.commit()
    return rule


async def delete_rule(session: AsyncSession, rule_id: int) -> None:
    """Remove a rule.

    Raises:
        NotFoundError: If the rule does not exist
    """
    result = await session.execute(delete(ServerRule).where(ServerRule.id == rule_id))
    if not result.rowcount:
        await session.rollback()
        raise NotFoundError(f"Unknown rule: {rule_id}")
    await session.commit()
