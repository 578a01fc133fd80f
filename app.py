import logging
import os
import uuid
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, render_template, request, session

from backends import ChatBackend, create_backend
from exchange import ExchangeBusyError, ExchangeSession, SessionStore, empty_snapshot

load_dotenv()

# ----- Config -----
DEFAULT_BACKEND = os.getenv("CHAT_BACKEND", "echo")
DEFAULT_ECHO_URL = os.getenv("ECHO_URL", "http://127.0.0.1:5000/api/echo")
DEFAULT_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
DEFAULT_API_KEY = os.getenv("OPENAI_API_KEY", "")
DEFAULT_MODEL = os.getenv("COMPLETION_MODEL", "gpt-3.5-turbo-instruct")
DEFAULT_PREDICTION_URL = os.getenv("PREDICTION_URL", "")
DEFAULT_PREDICTION_TOKEN = os.getenv("PREDICTION_TOKEN", "")
DEFAULT_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))
MAX_CONVERSATIONS = int(os.getenv("MAX_CONVERSATIONS", "1000"))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = Flask(__name__, static_folder="static", template_folder="templates")
app.secret_key = os.getenv("FLASK_SECRET_KEY", "change-this-key")
app.permanent_session_lifetime = timedelta(days=1)
app.config["CHAT_BACKEND"] = DEFAULT_BACKEND


def get_backend() -> ChatBackend:
    backend = app.extensions.get("chat_backend")
    if backend is None:
        backend = create_backend(
            app.config["CHAT_BACKEND"],
            echo_url=DEFAULT_ECHO_URL,
            base_url=DEFAULT_BASE_URL,
            api_key=DEFAULT_API_KEY,
            model=DEFAULT_MODEL,
            prediction_url=DEFAULT_PREDICTION_URL,
            prediction_token=DEFAULT_PREDICTION_TOKEN,
            timeout=DEFAULT_TIMEOUT,
        )
        app.extensions["chat_backend"] = backend
        logger.info("Using %s chat backend", backend.name)
    return backend


def get_store() -> SessionStore:
    store = app.extensions.get("chat_sessions")
    if store is None:
        store = SessionStore(
            get_backend,
            max_age=app.permanent_session_lifetime.total_seconds(),
            max_sessions=MAX_CONVERSATIONS,
        )
        app.extensions["chat_sessions"] = store
    return store


def current_session() -> ExchangeSession:
    conversation_id = session.get("conversation_id")
    if not conversation_id:
        conversation_id = uuid.uuid4().hex
        session["conversation_id"] = conversation_id
        session.permanent = True
    store = get_store()
    chat_session = store.get(conversation_id)
    logger.debug("Conversation %s in use (%d active)", conversation_id, len(store))
    return chat_session


def existing_session() -> Optional[ExchangeSession]:
    return get_store().peek(session.get("conversation_id"))


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _optional_str(data: dict, key: str):
    value = data.get(key)
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


@app.route("/")
def index():
    return render_template("index.html", backend=app.config["CHAT_BACKEND"])


@app.route("/api/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def echo():
    if request.method != "POST":
        resp = make_response(f"Method {request.method} Not Allowed", 405)
        resp.headers["Allow"] = "POST"
        resp.mimetype = "text/plain"
        return resp
    message = _payload().get("message", "")
    return jsonify({"message": f"Echo: {message}"})


@app.route("/api/history", methods=["GET"])
def history():
    chat_session = existing_session()
    return jsonify(chat_session.snapshot() if chat_session is not None else empty_snapshot())


@app.route("/api/chat", methods=["POST"])
def chat():
    data = _payload()
    raw = data.get("message")
    user_msg = raw if isinstance(raw, str) else ""
    if not user_msg.strip():
        chat_session = existing_session()
        payload = chat_session.snapshot() if chat_session is not None else empty_snapshot()
        payload.update(reply=None, ignored=True)
        return jsonify(payload)

    chat_session = current_session()
    try:
        reply = chat_session.submit(user_msg)
    except ExchangeBusyError as exc:
        return jsonify({"error": str(exc), **chat_session.snapshot()}), 409

    payload = chat_session.snapshot()
    payload["reply"] = reply.to_dict() if reply is not None else None
    payload["ignored"] = False
    return jsonify(payload)


@app.route("/api/session", methods=["POST"])
def update_session():
    data = _payload()
    chat_session = current_session()
    chat_session.update(
        input_text=_optional_str(data, "input"),
        db_config=_optional_str(data, "db_config"),
        project_description=_optional_str(data, "project_description"),
    )
    return jsonify(chat_session.snapshot())


@app.route("/api/reset", methods=["POST"])
def reset_chat():
    chat_session = existing_session()
    if chat_session is not None:
        chat_session.reset()
    return jsonify({"ok": True})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True, threaded=True)
