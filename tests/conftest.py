"""Pytest configuration: project root on sys.path, in-memory Supabase, fake bots."""
import os
import sys

import pytest

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import billing_db  # noqa: E402
import db_supabase  # noqa: E402
from bot_registry import BotRegistry, set_registry  # noqa: E402
from tests.fakes.supabase import FakeSupabase  # noqa: E402
from tests.fakes.telegram import FakeBot  # noqa: E402

USER_ID = 144022504


@pytest.fixture
def sb():
    fake = FakeSupabase()
    db_supabase.set_supabase(fake)
    billing_db._user_locks.clear()
    yield fake
    db_supabase.set_supabase(None)


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def registry(bot):
    reg = BotRegistry({bot.name: bot}, default_name=bot.name)
    set_registry(reg)
    yield reg
    set_registry(None)


@pytest.fixture
def user_id():
    return USER_ID
