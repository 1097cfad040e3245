import os

# settings are read at import time
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AI_PROVIDER"] = "openai"
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
for name in ("SENTRY_DSN", "NOTIFY_FUNCTION_URL", "SCHEDULER_FUNCTION_URL"):
    os.environ.pop(name, None)

import pytest  # noqa: E402

from scrapedeck.core.errors import ErrorHandler, reset_error_handler  # noqa: E402
from scrapedeck.db.base import Base  # noqa: E402
from scrapedeck.db.session import SessionLocal, engine, init_db  # noqa: E402
from scrapedeck.services.llm.base import Generation  # noqa: E402
from scrapedeck.services.realtime import reset_change_feed  # noqa: E402

USER = "user-1"


class FakeGenerator:
    """Scripted text generator; `replies` is a str, a list (consumed in order) or a callable(prompt)."""

    name = "fake"
    default_model = "fake-model"

    def __init__(self, replies="{}", tokens=42, configured=True, error=None):
        self.replies = replies
        self.tokens = tokens
        self._configured = configured
        self.error = error
        self.prompts = []

    @property
    def configured(self):
        return self._configured

    def generate(self, prompt, model=None, system=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if callable(self.replies):
            text = self.replies(prompt)
        elif isinstance(self.replies, list):
            text = self.replies.pop(0)
        else:
            text = self.replies
        return Generation(text=text, tokens_used=self.tokens, model=model or self.default_model)


@pytest.fixture(autouse=True)
def clean_state():
    init_db()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    reset_error_handler(ErrorHandler(report=False))
    reset_change_feed()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_job(db):
    from scrapedeck.services.repository import Repository

    def _make(name="Example job", url="https://example.com/p/1", user_id=USER, **values):
        values.setdefault("scraping_type", "general")
        return Repository(db).jobs.create(user_id=user_id, name=name, url=url, **values)

    return _make
