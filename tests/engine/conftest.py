import uuid

import pytest


@pytest.fixture
def make_session():
    """Build a SessionController backed by a scripted fake adapter.

    Returns (session, adapter_cls); the loaded adapter instance is
    `adapter_cls.created[-1]`.
    """
    from inferbridge.engine import registry
    from inferbridge.engine.config import GenerationConfig
    from inferbridge.engine.session import SessionConfig, SessionController
    from tests.engine.fakes import scripted_adapter

    sessions: list = []
    families: list[str] = []

    def _make(*, load: bool = True, generation=None, **script):
        adapter_cls = scripted_adapter(**script)
        family = f"fake-{uuid.uuid4().hex[:8]}"
        registry.register_adapter(family, adapter_cls)
        families.append(family)

        session = SessionController(
            SessionConfig(family=family, generation=generation or GenerationConfig())
        )
        sessions.append(session)
        if load:
            session.load_model("models/fake.gguf")
        return session, adapter_cls

    yield _make

    for session in sessions:
        session.shutdown(timeout=5)
    for family in families:
        registry.unregister_adapter(family)
