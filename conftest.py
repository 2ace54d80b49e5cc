"""
Root conftest — isolate Tether environment variables so that Settings tests
are not affected by a real relay token or config path in the developer's
or CI environment.
"""
import pytest

_TETHER_ENV_VARS = [
    "TETHER_RELAY_TOKEN",
    "TETHER_CONFIG",
    "CLAUDE_CONFIG_DIR",
]


@pytest.fixture(autouse=True)
def _isolate_tether_env(monkeypatch):
    """Remove Tether env vars for every test so Settings() behaves as if
    nothing is configured unless the test explicitly provides it.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _TETHER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)


class RecordingBackend:
    """SessionBackend double that records every outbound call."""

    def __init__(self, session_id: str = "sess-1", offline: bool = False):
        self.session_id = session_id
        self.is_offline = offline
        self.calls: list[tuple] = []
        self.user_handler = None
        self.event_handler = None

    def send_agent_message(self, message):
        self.calls.append(("agent_message", message))

    def send_session_event(self, event):
        self.calls.append(("session_event", event))

    def send_session_death(self):
        self.calls.append(("session_death",))

    def update_metadata(self, changes):
        self.calls.append(("metadata", changes))

    def update_agent_state(self, changes):
        self.calls.append(("agent_state", changes))

    def keep_alive(self, thinking, mode):
        self.calls.append(("keep_alive", thinking, mode))

    async def request_control_transfer(self):
        self.calls.append(("control_transfer",))

    def on_user_message(self, handler):
        self.user_handler = handler

    def on_session_event(self, handler):
        self.event_handler = handler

    async def flush(self, timeout: float = 5.0):
        self.calls.append(("flush",))

    async def close(self):
        self.calls.append(("close",))

    def sent(self, kind: str) -> list:
        return [c[1] if len(c) == 2 else c[1:] for c in self.calls if c[0] == kind]


@pytest.fixture
def relay_backend():
    return RecordingBackend()
