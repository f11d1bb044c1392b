import mongomock
import pytest

from condbalance.exceptions import ConstraintViolation, StoreBusy
from condbalance.mongostore import MongoBalanceStore
from condbalance.sqlstore import SQLBalanceStore
from condbalance.store import COMPLETED, PENDING, create_store, saving_method
from condbalance.testutil import get_store, prepare_config, seed_assignment


@pytest.fixture
def mongo_client():
    yield mongomock.MongoClient()


@pytest.fixture(params=["local", "mongo"])
def store(request, tmp_path, mongo_client):
    store = get_store(tmp_path, method=request.param, nconditions=3, mongo_client=mongo_client)
    yield store
    store.close()


@pytest.fixture
def tx(store):
    tx = store.begin()
    yield tx
    tx.rollback()


class TestSessionInitialization:
    def test_initialize_creates_all_counters(self, tx):
        assert tx.ensure_session_initialized("s1")

        counters = tx.list_counters("s1")
        assert [c.condition_id for c in counters] == [1, 2, 3]
        assert all(c.pending_count == 0 and c.completed_count == 0 for c in counters)

    def test_initialize_twice(self, tx):
        assert tx.ensure_session_initialized("s1")
        assert not tx.ensure_session_initialized("s1")
        assert len(tx.list_counters("s1")) == 3

    def test_sessions_are_independent(self, tx):
        tx.ensure_session_initialized("s1")
        assert tx.list_counters("s2") == []

    def test_initialization_persists_after_commit(self, store):
        tx = store.begin()
        tx.ensure_session_initialized("s1")
        tx.commit()

        tx = store.begin()
        assert not tx.ensure_session_initialized("s1")
        assert tx.list_sessions() == ["s1"]
        tx.rollback()


class TestAssignmentRecords:
    def test_insert_and_get(self, tx):
        tx.ensure_session_initialized("s1")
        tx.insert_assignment("p1", "s1", 2)

        assignment = tx.get_assignment("p1", "s1")
        assert assignment.condition_id == 2
        assert assignment.status == PENDING
        assert assignment.assigned_at is not None
        assert assignment.completed_at is None

    def test_get_missing(self, tx):
        assert tx.get_assignment("ghost", "s1") is None

    def test_insert_duplicate(self, tx):
        tx.ensure_session_initialized("s1")
        tx.insert_assignment("p1", "s1", 1)

        with pytest.raises(ConstraintViolation):
            tx.insert_assignment("p1", "s1", 2)

    def test_same_participant_in_two_sessions(self, tx):
        tx.ensure_session_initialized("s1")
        tx.ensure_session_initialized("s2")
        tx.insert_assignment("p1", "s1", 1)
        tx.insert_assignment("p1", "s2", 3)

        assert tx.get_assignment("p1", "s1").condition_id == 1
        assert tx.get_assignment("p1", "s2").condition_id == 3

    @pytest.mark.parametrize("condition_id", [0, 4, -1])
    def test_condition_out_of_range(self, tx, condition_id):
        tx.ensure_session_initialized("s1")

        with pytest.raises(ConstraintViolation):
            tx.insert_assignment("p1", "s1", condition_id)

    def test_invalid_status(self, tx):
        tx.ensure_session_initialized("s1")

        with pytest.raises(ConstraintViolation):
            tx.insert_assignment("p1", "s1", 1, status="abandoned")

    def test_complete(self, tx):
        tx.ensure_session_initialized("s1")
        tx.insert_assignment("p1", "s1", 1)
        tx.update_assignment_status("p1", "s1", COMPLETED)

        assignment = tx.get_assignment("p1", "s1")
        assert assignment.completed
        assert assignment.completed_at is not None

    def test_status_is_monotonic(self, tx):
        tx.ensure_session_initialized("s1")
        tx.insert_assignment("p1", "s1", 1)
        tx.update_assignment_status("p1", "s1", COMPLETED)

        with pytest.raises(ConstraintViolation):
            tx.update_assignment_status("p1", "s1", PENDING)

        with pytest.raises(ConstraintViolation):
            tx.update_assignment_status("p1", "s1", COMPLETED)

    def test_update_missing(self, tx):
        tx.ensure_session_initialized("s1")

        with pytest.raises(ConstraintViolation):
            tx.update_assignment_status("ghost", "s1", COMPLETED)

    def test_list_assignments(self, store):
        seed_assignment(store, "p1", "s1", 1)
        seed_assignment(store, "p2", "s1", 2, status=COMPLETED)
        seed_assignment(store, "p3", "s2", 1)

        tx = store.begin()
        all_assignments = list(tx.list_assignments())
        s1 = list(tx.list_assignments("s1"))
        tx.rollback()

        assert len(all_assignments) == 3
        assert {a.participant_id for a in s1} == {"p1", "p2"}


class TestCounters:
    def test_increment(self, tx):
        tx.ensure_session_initialized("s1")
        tx.increment_pending("s1", 2, 1)
        tx.increment_pending("s1", 2, 1)
        tx.increment_completed("s1", 3, 1)

        counters = {c.condition_id: c for c in tx.list_counters("s1")}
        assert counters[2].pending_count == 2
        assert counters[3].completed_count == 1
        assert counters[1].total == 0

    def test_counters_never_negative(self, tx):
        tx.ensure_session_initialized("s1")

        with pytest.raises(ConstraintViolation):
            tx.increment_pending("s1", 1, -1)

    def test_delta_must_be_one(self, tx):
        tx.ensure_session_initialized("s1")

        with pytest.raises(ConstraintViolation):
            tx.increment_pending("s1", 1, 2)

    def test_increment_uninitialized_session(self, tx):
        with pytest.raises(ConstraintViolation):
            tx.increment_pending("s1", 1, 1)


class TestTransactions:
    def test_rollback_discards_writes(self, store):
        tx = store.begin()
        tx.ensure_session_initialized("s1")
        tx.insert_assignment("p1", "s1", 1)
        tx.increment_pending("s1", 1, 1)
        tx.rollback()

        tx = store.begin()
        assert tx.get_assignment("p1", "s1") is None
        assert tx.list_counters("s1") == []
        tx.rollback()

    def test_commit_makes_writes_visible(self, store):
        seed_assignment(store, "p1", "s1", 3)

        tx = store.begin()
        assert tx.get_assignment("p1", "s1").condition_id == 3
        assert tx.list_counters("s1")[2].pending_count == 1
        tx.rollback()

    def test_closed_transaction(self, store):
        tx = store.begin()
        tx.commit()

        with pytest.raises(RuntimeError):
            tx.get_assignment("p1", "s1")

    def test_rollback_after_commit_is_harmless(self, store):
        tx = store.begin()
        tx.ensure_session_initialized("s1")
        tx.commit()
        tx.rollback()


class TestNconditionsMismatch:
    def test_local(self, tmp_path):
        store = get_store(tmp_path, nconditions=3)
        seed_assignment(store, "p1", "s1", 1)
        store.close()

        with pytest.raises(ValueError):
            get_store(tmp_path, nconditions=4)

    def test_mongo(self, tmp_path, mongo_client):
        store = get_store(tmp_path, method="mongo", nconditions=3, mongo_client=mongo_client)
        seed_assignment(store, "p1", "s1", 1)

        with pytest.raises(ValueError):
            get_store(tmp_path, method="mongo", nconditions=4, mongo_client=mongo_client)


class TestMongoConcurrentWrites:
    @pytest.fixture
    def mstore(self, tmp_path, mongo_client):
        yield get_store(tmp_path, method="mongo", nconditions=3, mongo_client=mongo_client)

    def test_concurrent_initialization(self, mstore):
        tx1 = mstore.begin()
        tx2 = mstore.begin()
        tx1.ensure_session_initialized("s1")
        tx2.ensure_session_initialized("s1")

        tx1.commit()
        with pytest.raises(StoreBusy):
            tx2.commit()

    def test_concurrent_update(self, mstore):
        seed_assignment(mstore, "p1", "s1", 1)

        tx1 = mstore.begin()
        tx2 = mstore.begin()
        tx1.increment_completed("s1", 2, 1)
        tx2.increment_completed("s1", 3, 1)

        tx1.commit()
        with pytest.raises(StoreBusy):
            tx2.commit()

        tx = mstore.begin()
        counters = tx.list_counters("s1")
        tx.rollback()
        assert [c.completed_count for c in counters] == [0, 1, 0]

    def test_read_only_commit_never_conflicts(self, mstore):
        seed_assignment(mstore, "p1", "s1", 1)

        tx1 = mstore.begin()
        tx1.get_assignment("p1", "s1")
        seed_assignment(mstore, "p2", "s1", 2)
        tx1.commit()


class TestCreateStore:
    def test_saving_method(self, tmp_path):
        config = prepare_config(tmp_path, store={"method": " Mongo "})
        assert saving_method(config) == "mongo"

    def test_invalid_saving_method(self, tmp_path):
        config = prepare_config(tmp_path, store={"method": "json"})

        with pytest.raises(ValueError):
            saving_method(config)

    def test_default_local_store(self, tmp_path):
        config = prepare_config(tmp_path)
        store = create_store(config)

        assert isinstance(store, SQLBalanceStore)
        assert store.nconditions == 12
        assert (tmp_path / "conditions.db").exists()
        store.close()

    def test_local_store_from_url(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'other.db'}"
        config = prepare_config(tmp_path, store={"url": url}, balancer={"nconditions": 4})
        store = create_store(config)

        assert store.nconditions == 4
        assert (tmp_path / "other.db").exists()
        store.close()

    def test_mongo_store_needs_secrets(self, tmp_path):
        config = prepare_config(tmp_path, store={"method": "mongo"})

        with pytest.raises(ValueError):
            create_store(config)

    def test_mongo_store_from_secrets(self, tmp_path, mongo_client):
        config = prepare_config(tmp_path, mongo={"database": "db", "collection": "col"})
        store = MongoBalanceStore.from_secrets(config["mongo"], nconditions=3, client=mongo_client)

        assert store.collection.name == "col"
        assert store.nconditions == 3
