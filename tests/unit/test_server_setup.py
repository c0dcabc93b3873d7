"""
Unit tests for building and configuring the server from configuration.
"""

import logging

import pytest

from parley.config import Config
from parley.errors import ErrorCode, ServerError
from parley.server import ParleyServer, setup_logging


@pytest.fixture
def config(temp_dir):
    config = Config(temp_dir / "config.toml")
    config.set("storage", "data_dir", str(temp_dir / "data"))
    config.set("server", "port", 0)
    config.set("limits", "max_text_length", 42)
    config.set("crypto", "argon2_memory_cost", 1024)
    config.set("crypto", "argon2_time_cost", 1)
    return config


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in handlers:
            handler.close()
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.mark.asyncio
async def test_from_config_wires_stores(config, temp_dir):
    server = ParleyServer.from_config(config)

    assert server.port == 0
    assert server.router.max_text_length == 42
    assert server.accounts.users_file == temp_dir / "data" / "users.json"
    assert server.attachments.upload_dir == temp_dir / "data" / "uploads"
    assert server.accounts.kdf_params.memory_cost == 1024


@pytest.mark.asyncio
async def test_start_reports_bound_port(config):
    server = ParleyServer.from_config(config)

    await server.start()
    try:
        assert server.running
        assert server.port != 0
    finally:
        await server.stop()
    assert not server.running


@pytest.mark.asyncio
async def test_start_failure_raises_server_error(config):
    first = ParleyServer.from_config(config)
    await first.start()
    try:
        config.set("server", "port", first.port)
        second = ParleyServer.from_config(config)
        with pytest.raises(ServerError) as exc_info:
            await second.start()
        assert exc_info.value.code == ErrorCode.E801_SERVER_START_FAILED
    finally:
        await first.stop()


def test_setup_logging_writes_log_file(config, temp_dir, clean_root_logger):
    config.set("logging", "console_logging", False)

    setup_logging(config, debug=True)
    logging.getLogger("parley.test").debug("hello log")

    assert clean_root_logger.level == logging.DEBUG
    for handler in clean_root_logger.handlers:
        handler.flush()
    assert "hello log" in (temp_dir / "data" / "parley.log").read_text()
