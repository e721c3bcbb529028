# src/aipmstate/session.py: Start and end the workspace's unit of work.
# A workspace has at most one active session, stored at runtime.session.
# Ending a session marks it inactive and archives a copy in
# runtime.sessionHistory; starting over an active one requires `force` and
# records which session superseded it.

import copy
import uuid
from typing import Any, Dict, Optional

from .document import utc_now
from .util.errors import SessionError
from .util.log import get_logger

logger = get_logger(__name__)

CONTEXTS = ("framework", "project")


def _archive(runtime: Dict[str, Any], session: Dict[str, Any], limit: int) -> None:
    history = runtime.setdefault("sessionHistory", [])
    history.append(copy.deepcopy(session))
    if len(history) > limit:
        del history[: len(history) - limit]


def active_session(store) -> Optional[Dict[str, Any]]:
    session = store.get("runtime.session", None)
    if session and session.get("active"):
        return session
    return None


def start_session(store, context: str = "framework", project: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
    """
    Starts a session in the workspace.

    Args:
        store: The workspace's StateStore.
        context: 'framework' or 'project'.
        project: Project name; required for the 'project' context.
        force: Supersede an already active session instead of failing.

    Returns:
        The new session descriptor.

    Raises:
        SessionError: If the context is invalid, sessions are disabled, or a
            session is already active and `force` is not set.
    """
    if context not in CONTEXTS:
        raise SessionError(f"Unknown session context '{context}'; expected one of {', '.join(CONTEXTS)}")
    if context == "project" and not project:
        raise SessionError("A project session needs a project name")

    def start(tx) -> Dict[str, Any]:
        settings = tx.document["computed"]["settings"]
        if not settings["sessionsEnabled"]:
            raise SessionError("Sessions are disabled by configuration")
        runtime = tx.document["runtime"]
        now = utc_now()
        session_id = f"{context}-{uuid.uuid4().hex[:12]}"
        current = runtime.get("session")
        if current and current.get("active"):
            if not force:
                raise SessionError(f"Session '{current['id']}' is already active; end it first")
            superseded = {**current, "active": False, "endedAt": now, "supersededBy": session_id}
            _archive(runtime, superseded, settings["sessionHistoryLimit"])
            logger.warning(f"Session '{current['id']}' superseded by '{session_id}'")
        session = {
            "id": session_id,
            "context": context,
            "project": project if context == "project" else None,
            "startedAt": now,
            "endedAt": None,
            "active": True,
            "branch": runtime.get("currentBranch"),
        }
        runtime["session"] = session
        return copy.deepcopy(session)

    session = store.mutate("start session", start)
    logger.info(f"Started session '{session['id']}'")
    return session


def end_session(store) -> Dict[str, Any]:
    """Marks the active session inactive and archives it."""
    def end(tx) -> Dict[str, Any]:
        runtime = tx.document["runtime"]
        current = runtime.get("session")
        if not current or not current.get("active"):
            raise SessionError("No active session to end")
        ended = {**current, "active": False, "endedAt": utc_now()}
        runtime["session"] = ended
        _archive(runtime, ended, tx.document["computed"]["settings"]["sessionHistoryLimit"])
        return copy.deepcopy(ended)

    session = store.mutate("end session", end)
    logger.info(f"Ended session '{session['id']}'")
    return session
