#!/usr/bin/env python3
"""
Seed the default conversation flow and follow-up configs

Run from the project root:
    python scripts/seed_defaults.py

Options:
    --force-state-machine   activate the built-in flow even if one is active
    --dry-run               only report what would be stored

Existing follow-up configs are never overwritten.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Project root on the path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import select, update  # noqa: E402

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.db.database import Base, engine, AsyncSessionLocal  # noqa: E402
from app.db import models  # noqa: E402,F401
from app.db.models.followup_config import FollowupConfig, FollowupConfigType  # noqa: E402
from app.db.models.state_machine_definition import StateMachineDefinition  # noqa: E402
from app.state_machine import DEFAULT_STATE_MACHINE, StateMachineManager  # noqa: E402

logger = get_logger("seed_defaults")


DEFAULT_FOLLOWUP_CONFIGS = [
    {
        "name": "nudge_short",
        "config_type": FollowupConfigType.TEXT,
        "content": "Hola {{name}}! 👋 Sigues ahí? Avísame si tienes alguna duda.",
        "variables_config": [
            {"key": "name", "type": "path", "field": "contact.first_name", "default": ""},
        ],
    },
    {
        "name": "nudge_daily",
        "config_type": FollowupConfigType.TEXT,
        "content": "Hola {{name}}! {{hook}}",
        "variables_config": [
            {"key": "name", "type": "path", "field": "contact.first_name", "default": ""},
            {
                "key": "hook",
                "type": "llm",
                "prompt": "Write one friendly sentence inviting the customer to continue "
                          "where the conversation stopped.",
                "default": "Quedo atento por si quieres retomar la conversación.",
            },
        ],
    },
    {
        "name": "nudge_last",
        "config_type": FollowupConfigType.TEXT,
        "content": "Hola! Solo pasaba para ver si necesitas algo más. Saludos!",
        "variables_config": [],
    },
    {
        "name": "check_in_weekly",
        "config_type": FollowupConfigType.TEMPLATE,
        "content": "weekly_check_in",
        "variables_config": [
            {"key": "name", "type": "path", "field": "contact.first_name", "default": "amigo"},
        ],
    },
]


async def seed_state_machine(db, force: bool, dry_run: bool) -> bool:
    result = await db.execute(
        select(StateMachineDefinition).where(StateMachineDefinition.is_active == True)  # noqa: E712
    )
    active = result.scalars().first()
    if active is not None and not force:
        print(f"  - state machine '{active.name}' v{active.version} already active, skipped")
        return False

    if dry_run:
        print(f"  + would activate '{DEFAULT_STATE_MACHINE.name}' v{DEFAULT_STATE_MACHINE.version}")
        return True

    existing = await db.execute(
        select(StateMachineDefinition).where(
            StateMachineDefinition.name == DEFAULT_STATE_MACHINE.name,
            StateMachineDefinition.version == DEFAULT_STATE_MACHINE.version,
        )
    )
    row = existing.scalar_one_or_none()
    if row is not None:
        # Same name/version already stored: just flip it back on
        await db.execute(
            update(StateMachineDefinition)
            .where(StateMachineDefinition.is_active == True)  # noqa: E712
            .values(is_active=False)
        )
        row.is_active = True
        await db.commit()
        await StateMachineManager(db).invalidate_cache()
    else:
        await StateMachineManager(db).activate(DEFAULT_STATE_MACHINE)

    print(f"  + activated '{DEFAULT_STATE_MACHINE.name}' v{DEFAULT_STATE_MACHINE.version}")
    return True


async def seed_followup_configs(db, dry_run: bool) -> int:
    result = await db.execute(select(FollowupConfig.name))
    existing = set(result.scalars().all())

    created = 0
    for config in DEFAULT_FOLLOWUP_CONFIGS:
        if config["name"] in existing:
            print(f"  - follow-up config '{config['name']}' exists, skipped")
            continue
        print(f"  + follow-up config '{config['name']}'")
        if not dry_run:
            db.add(FollowupConfig(**config))
        created += 1

    if created and not dry_run:
        await db.commit()
    return created


async def main(force_state_machine: bool, dry_run: bool) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("State machine:")
        await seed_state_machine(db, force_state_machine, dry_run)
        print("Follow-up configs:")
        created = await seed_followup_configs(db, dry_run)

    logger.info(
        "Defaults seeded",
        extra_data={"followup_configs_created": created, "dry_run": dry_run}
    )
    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed default flow and follow-up configs")
    parser.add_argument("--force-state-machine", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    setup_logging(level="INFO", json_format=False, app_name="seed_defaults")
    asyncio.run(main(args.force_state_machine, args.dry_run))
