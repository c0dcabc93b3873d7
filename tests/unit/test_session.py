"""
Unit tests for ChatSession wiring that needs no server.
"""

import pytest

from parley.config import Config
from parley.constants import PERMISSION_DENIED_NOTICE
from parley.errors import ErrorCode
from parley.reconcile import MessageState, ReconciliationEngine
from parley.session import ChatSession


@pytest.mark.asyncio
async def test_from_config_reads_server_and_notice_settings(temp_dir):
    config = Config(temp_dir / "config.toml")
    config.set("server", "port", 6123)
    config.set("notifications", "notice_lifetime", 2.5)

    session = ChatSession.from_config(config, host="10.0.0.5")

    assert session.client.host == "10.0.0.5"
    assert session.client.port == 6123
    assert session.notifications.lifetime == 2.5


@pytest.mark.asyncio
async def test_error_without_temp_id_is_not_a_send_rejection():
    session = ChatSession()
    session.engine = ReconciliationEngine("carol")
    pending = session.engine.add_pending("t1", group_id="g1", text="hi")

    session._on_error(
        {"code": ErrorCode.E004_PERMISSION_DENIED.value, "message": "Not a member of this group"}
    )

    assert [n.text for n in session.notifications.active()] == ["Not a member of this group"]
    assert session.engine.get_by_temp_id("t1") is pending
    assert pending.state == MessageState.PENDING


@pytest.mark.asyncio
async def test_denied_send_withdraws_pending_entry():
    session = ChatSession()
    session.engine = ReconciliationEngine("carol")
    session.engine.add_pending("t1", group_id="g1", text="hi")

    session._on_error(
        {"code": ErrorCode.E004_PERMISSION_DENIED.value, "message": "denied", "temp_id": "t1"}
    )

    assert session.engine.get_by_temp_id("t1") is None
    assert [n.text for n in session.notifications.active()] == [PERMISSION_DENIED_NOTICE]
