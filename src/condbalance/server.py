"""
HTTP interface for the balancer.

Routes:

* ``GET /assign-condition?prolific_pid=...&session_id=...`` returns
  ``{"condition": <int>}``.
* ``POST /confirm-condition`` with a JSON body
  ``{"prolific_pid": ..., "session_id": ...}`` returns
  ``{"status": "success"}``.
* ``GET /sessions/<session_id>/counters`` returns the counters of a
  session together with their load weights.

The app is configured by setting the attributes of :class:`Service`,
which :class:`condbalance.run.BalancerRunner` does for you.
"""

import logging

from flask import Flask, jsonify, request

from .balancer import load_weight
from .exceptions import AlreadyCompleted, NotFound, OperationFailed


class Service:
    balancer = None
    config = None
    cors_origins = "*"


app = Flask(__name__)
service = Service()

logger = logging.getLogger("condbalance.server")


def _error(msg: str, status: int):
    resp = jsonify({"error": msg})
    resp.status_code = status
    return resp


def _failure_response(e: OperationFailed):
    if isinstance(e, NotFound):
        return _error(str(e), 404)
    if isinstance(e, AlreadyCompleted):
        return _error(str(e), 409)
    return _error(
        f"Error during {e.operation} for user {e.participant_id} in session {e.session_id}", 500
    )


@app.after_request
def add_cors_headers(resp):
    resp.headers["Access-Control-Allow-Origin"] = service.cors_origins
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


@app.route("/assign-condition", methods=["GET"])
def assign_condition():
    participant_id = request.args.get("prolific_pid")
    session_id = request.args.get("session_id")
    if not participant_id or not session_id:
        return _error("Missing subject or session id", 400)

    try:
        condition_id = service.balancer.assign(participant_id, session_id)
    except OperationFailed as e:
        return _failure_response(e)

    return jsonify({"condition": condition_id})


@app.route("/confirm-condition", methods=["POST"])
def confirm_condition():
    data = request.get_json(silent=True) or {}
    participant_id = data.get("prolific_pid")
    session_id = data.get("session_id")
    if not participant_id or not session_id:
        return _error("Missing subject or session id", 400)

    try:
        service.balancer.confirm(participant_id, session_id)
    except OperationFailed as e:
        return _failure_response(e)

    return jsonify({"status": "success"})


@app.route("/sessions/<session_id>/counters", methods=["GET"])
def session_counters(session_id):
    balancer = service.balancer
    try:
        counters = balancer.counters(session_id)
    except Exception:
        logger.exception(f"Exception while loading counters of session {session_id}.")
        return _error(f"Could not load counters of session {session_id}", 500)

    rows = [
        {
            "condition": c.condition_id,
            "pending": c.pending_count,
            "completed": c.completed_count,
            "weight": load_weight(c, balancer.pending_weight),
        }
        for c in counters
    ]
    return jsonify({"session_id": session_id, "counters": rows})
