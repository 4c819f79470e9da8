#!/usr/bin/env python3
"""
Run automation rules by hand, outside the scheduler.

Run from backend directory:
  python scripts/run_rule.py --list
  python scripts/run_rule.py --rule-id <uuid>
  python scripts/run_rule.py --due
  python scripts/run_rule.py --reset-budgets
"""

import asyncio
import argparse
import sys
import uuid
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from sqlalchemy import select
from app.database import async_session, engine
from app.models import AutomationRule
from app.services.rule_engine import create_rule_engine


async def list_rules():
    async with async_session() as db:
        result = await db.execute(select(AutomationRule).order_by(AutomationRule.created_at))
        rules = result.scalars().all()
    if not rules:
        print("No automation rules found.")
        return
    for rule in rules:
        state = "active" if rule.is_active else "paused"
        last_run = rule.last_run_at.isoformat() if rule.last_run_at else "never"
        print(f"  {rule.id}  [{state}] {rule.rule_type:<24} {rule.name}  (last run: {last_run})")


async def run_one(rule_id: str):
    async with async_session() as db:
        rule = await db.get(AutomationRule, uuid.UUID(rule_id))
    if rule is None:
        print(f"Rule {rule_id} not found.")
        return 1
    status = await create_rule_engine().process_rule(rule)
    print(f"Rule '{rule.name}' finished: {status.value if status else 'SKIPPED (empty scope)'}")
    return 0


async def main():
    parser = argparse.ArgumentParser(description="Run automation rules by hand")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List all rules")
    group.add_argument("--rule-id", help="Run a single rule now, ignoring its schedule")
    group.add_argument("--due", action="store_true", help="Run every due active rule once")
    group.add_argument("--reset-budgets", action="store_true", help="Restore today's accelerated budgets")
    args = parser.parse_args()

    code = 0
    try:
        if args.list:
            await list_rules()
        elif args.rule_id:
            code = await run_one(args.rule_id)
        elif args.due:
            result = await create_rule_engine().run_due_rules()
            print(f"Processed {result['due']} of {result['active']} active rule(s).")
            for rid, status in result["results"].items():
                print(f"  {rid}: {status}")
        elif args.reset_budgets:
            result = await create_rule_engine().reset_budgets()
            if "error" in result:
                print(f"Budget reset failed: {result['error']}")
                code = 1
            else:
                print(f"Reset {result['reset']} budget(s) for {result['date']}.")
    finally:
        await engine.dispose()
    return code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
