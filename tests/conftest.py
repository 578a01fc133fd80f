import pytest

from app import app as flask_app
from backends import ChatBackend


class FakeBackend(ChatBackend):
    name = "fake"

    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    def send_message(self, context, text):
        self.calls.append((tuple(context), text))
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return f"reply to {text}"


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


class FakeHTTP:
    """Stands in for requests.Session; records posts and replays one response."""

    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def app(backend):
    flask_app.config.update(TESTING=True)
    flask_app.extensions["chat_backend"] = backend
    flask_app.extensions.pop("chat_sessions", None)
    yield flask_app
    flask_app.extensions.pop("chat_backend", None)
    flask_app.extensions.pop("chat_sessions", None)


@pytest.fixture
def client(app):
    return app.test_client()

