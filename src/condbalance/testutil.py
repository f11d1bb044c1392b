"""
Provides utility functionality for testing.
"""

import os
from pathlib import Path

from pymongo import MongoClient

from condbalance.balancer import Balancer
from condbalance.config import BalancerConfig
from condbalance.mongostore import MongoBalanceStore
from condbalance.sqlstore import SQLBalanceStore
from condbalance.store import COMPLETED, PENDING


def prepare_config(tmp_path, config_path: str = None, **sections) -> BalancerConfig:
    """
    Returns a config for a study directory at *tmp_path*.

    If *config_path* is given, the file is copied into *tmp_path* as
    ``config.conf``. Additional sections can be given as keyword
    arguments, e.g. ``balancer={"nconditions": 3}``.
    """
    if config_path:
        config = Path(config_path).read_text(encoding="utf-8")
        (Path(tmp_path) / "config.conf").write_text(config, encoding="utf-8")

    objects = [{name: {k: str(v) for k, v in options.items()} for name, options in sections.items()}]
    return BalancerConfig(expdir=tmp_path, config_objects=objects)


def get_store(tmp_path, method: str = "local", nconditions: int = 3, mongo_client=None, **kwargs):
    """
    Returns a fresh balance store.

    Args:
        tmp_path: Directory for the SQLite file of a 'local' store.
        method (str): 'local' or 'mongo'.
        nconditions (int): Number of conditions.
        mongo_client: Client for a 'mongo' store, usually a
            :class:`mongomock.MongoClient`.
    """
    if method == "local":
        url = f"sqlite:///{Path(tmp_path) / 'conditions.db'}"
        return SQLBalanceStore(url, nconditions=nconditions, **kwargs)
    elif method == "mongo":
        if mongo_client is None:
            raise ValueError("A mongo store needs a mongo_client.")
        collection = mongo_client["condbalance_test"]["balance_data"]
        return MongoBalanceStore(collection, nconditions=nconditions)
    raise ValueError(f"Unknown store method {method!r}.")


def get_balancer(tmp_path, method: str = "local", nconditions: int = 3, mongo_client=None, **kwargs) -> Balancer:
    """
    Returns a balancer on a fresh store. Keyword arguments are passed
    on to :class:`~condbalance.balancer.Balancer`. Waiting between
    attempts is disabled by default.
    """
    store = get_store(tmp_path, method=method, nconditions=nconditions, mongo_client=mongo_client)
    kwargs.setdefault("sleep", lambda seconds: None)
    return Balancer(store, **kwargs)


def seed_assignment(store, participant_id: str, session_id: str, condition_id: int, status: str = PENDING):
    """
    Writes an assignment with consistent counters directly to *store*,
    bypassing the balancing decision.
    """
    tx = store.begin()
    try:
        tx.ensure_session_initialized(session_id)
        tx.insert_assignment(participant_id, session_id, condition_id, status=PENDING)
        tx.increment_pending(session_id, condition_id, 1)
        if status == COMPLETED:
            tx.update_assignment_status(participant_id, session_id, COMPLETED)
            tx.increment_pending(session_id, condition_id, -1)
            tx.increment_completed(session_id, condition_id, 1)
        tx.commit()
    except BaseException:
        tx.rollback()
        raise


def assert_counters_consistent(balancer: Balancer, session_id: str):
    """
    Asserts that the counters of a session match its assignments.
    """
    counters = balancer.counters(session_id)
    assignments = balancer.assignments(session_id)

    assert sum(c.total for c in counters) == len(assignments)
    for c in counters:
        in_condition = [a for a in assignments if a.condition_id == c.condition_id]
        assert c.pending_count == len([a for a in in_condition if a.status == PENDING])
        assert c.completed_count == len([a for a in in_condition if a.status == COMPLETED])


def get_db():
    """
    Returns the mongoDB database specified via credentials in the
    environment, or *None* if no host is configured.
    """
    host = os.getenv("MONGODB_HOST")
    if not host:
        return None

    kwargs = {"host": host, "port": int(os.getenv("MONGODB_PORT", "27017"))}
    if os.getenv("MONGODB_USERNAME"):
        kwargs["username"] = os.getenv("MONGODB_USERNAME")
        kwargs["password"] = os.getenv("MONGODB_PASSWORD")
    mc = MongoClient(**kwargs)
    return mc[os.getenv("MONGODB_DATABASE", "condbalance_test")]
