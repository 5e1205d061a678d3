import sys
from pathlib import Path

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from mcp_hub.config import ServerConfig
from mcp_hub.llm import ModelBackend
from mcp_hub.manager import ProcessPool

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVERS_DIR = Path(__file__).resolve().parent / "servers"

# Tool servers import mcp_hub; make that work without an install.
SERVER_ENV = {"PYTHONPATH": str(PROJECT_ROOT)}


def module_server(name: str, module: str, *extra: str, **kwargs) -> ServerConfig:
    return ServerConfig(
        name=name,
        command=[sys.executable, "-m", module, *extra],
        env=SERVER_ENV,
        cwd=str(PROJECT_ROOT),
        **kwargs,
    )


def fake_backend(*responses: str, fast: list[str] | None = None) -> ModelBackend:
    """ModelBackend over LangChain's scripted chat model."""
    full = FakeListChatModel(responses=list(responses))
    fast_model = FakeListChatModel(responses=fast) if fast is not None else None
    return ModelBackend(full, fast_model)


@pytest.fixture
def echo_config() -> ServerConfig:
    return module_server("echo", "mcp_hub.servers.echo")


@pytest.fixture
def calculator_config() -> ServerConfig:
    return module_server("calculator", "mcp_hub.servers.calculator")


@pytest.fixture
def pool():
    pool = ProcessPool(call_timeout=10, init_timeout=10, readiness_timeout=10)
    yield pool
    pool.stop_all()
