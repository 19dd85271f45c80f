"""Unit tests for the policy engine and its stores."""

import threading
from unittest.mock import MagicMock

import pytest

from authgate.core.bootstrap import bootstrap_builtin_roles
from authgate.core.database import build_engine
from authgate.core.errors import InvalidPolicyError, PolicyStoreError
from authgate.core.policy_engine import Grouping, Policy, PolicyEngine
from authgate.core.policy_store import InMemoryPolicyStore, PolicyStore, SQLPolicyStore
from authgate.core.rbac import RoleRegistry


class TestEnforce:
    """Test cases for request evaluation."""

    def test_direct_rule(self, policy_engine):
        policy_engine.add_policy("admin:1", "/admin/orders", "GET")

        assert policy_engine.enforce("admin:1", "/admin/orders", "GET")
        assert not policy_engine.enforce("admin:1", "/admin/orders", "POST")
        assert not policy_engine.enforce("admin:2", "/admin/orders", "GET")

    def test_rule_through_role(self, policy_engine):
        policy_engine.add_policy("role:support", "/admin/orders/:id", "GET")
        policy_engine.add_grouping("admin:7", "role:support")

        assert policy_engine.enforce("admin:7", "/admin/orders/99", "GET")
        assert not policy_engine.enforce("admin:7", "/admin/orders/99/refund", "GET")

    def test_wildcard_action(self, policy_engine):
        policy_engine.add_policy("role:ops", "/admin/products", "*")
        policy_engine.add_grouping("admin:3", "role:ops")

        for method in ("GET", "POST", "DELETE"):
            assert policy_engine.enforce("admin:3", "/admin/products", method)

    def test_inheritance_chain(self, policy_engine):
        policy_engine.add_policy("role:base", "/admin/dashboard", "GET")
        policy_engine.add_grouping("role:middle", "role:base")
        policy_engine.add_grouping("role:top", "role:middle")
        policy_engine.add_grouping("admin:5", "role:top")

        assert policy_engine.enforce("admin:5", "/admin/dashboard", "GET")
        assert policy_engine.get_implicit_roles_for("admin:5") == ["role:top", "role:middle", "role:base"]

    def test_cycle_terminates(self, policy_engine):
        policy_engine.add_grouping("role:a", "role:b")
        policy_engine.add_grouping("role:b", "role:a")
        policy_engine.add_grouping("admin:1", "role:a")

        assert not policy_engine.enforce("admin:1", "/admin/x", "GET")

    def test_depth_limit(self, policy_store):
        engine = PolicyEngine(policy_store, max_depth=2)
        engine.add_grouping("admin:1", "role:r1")
        engine.add_grouping("role:r1", "role:r2")
        engine.add_grouping("role:r2", "role:r3")
        engine.add_policy("role:r3", "/admin/deep", "GET")
        engine.add_policy("role:r2", "/admin/shallow", "GET")

        assert engine.enforce("admin:1", "/admin/shallow", "GET")
        assert not engine.enforce("admin:1", "/admin/deep", "GET")


class TestMutations:
    """Test cases for rule and grouping mutations."""

    def test_add_policy_is_idempotent(self, policy_engine, policy_store):
        assert policy_engine.add_policy("role:x", "/admin/a", "GET") is True
        assert policy_engine.add_policy("role:x", "/admin/a", "GET") is False
        assert policy_store.load_all() == [("p", "role:x", "/admin/a", "GET")]

    def test_add_policies_counts_new_rules(self, policy_engine):
        policy_engine.add_policy("role:x", "/admin/a", "GET")
        added = policy_engine.add_policies([
            ("role:x", "/admin/a", "GET"),
            ("role:x", "/admin/b", "GET"),
            ("role:x", "/admin/b", "GET"),
        ])
        assert added == 1
        assert policy_engine.has_policy("role:x", "/admin/b", "GET")

    def test_remove_policy(self, policy_engine, policy_store):
        policy_engine.add_policy("role:x", "/admin/a", "GET")

        assert policy_engine.remove_policy("role:x", "/admin/a", "GET") is True
        assert policy_engine.remove_policy("role:x", "/admin/a", "GET") is False
        assert policy_store.load_all() == []
        assert not policy_engine.enforce("role:x", "/admin/a", "GET")

    @pytest.mark.parametrize("subject,obj,action", [
        ("", "/admin/a", "GET"),
        ("role:x", "admin/a", "GET"),
        ("role:x", "/admin/a", ""),
    ])
    def test_invalid_policy_rejected(self, policy_engine, subject, obj, action):
        with pytest.raises(InvalidPolicyError):
            policy_engine.add_policy(subject, obj, action)

    def test_filtered_policy(self, policy_engine):
        policy_engine.add_policy("role:x", "/admin/a", "GET")
        policy_engine.add_policy("role:x", "/admin/b", "POST")
        policy_engine.add_policy("role:y", "/admin/a", "GET")

        assert policy_engine.get_filtered_policy(0, "role:x") == [
            Policy("role:x", "/admin/a", "GET"),
            Policy("role:x", "/admin/b", "POST"),
        ]
        assert policy_engine.get_filtered_policy(1, "/admin/a") == [
            Policy("role:x", "/admin/a", "GET"),
            Policy("role:y", "/admin/a", "GET"),
        ]

        assert policy_engine.remove_filtered_policy(0, "role:x") is True
        assert policy_engine.get_policy() == [Policy("role:y", "/admin/a", "GET")]

    def test_groupings(self, policy_engine):
        policy_engine.add_grouping("admin:1", "role:a")
        policy_engine.add_grouping("admin:1", "role:b")
        policy_engine.add_grouping("admin:2", "role:a")

        assert policy_engine.get_roles_for("admin:1") == ["role:a", "role:b"]
        assert policy_engine.get_filtered_grouping(1, "role:a") == [
            Grouping("admin:1", "role:a"),
            Grouping("admin:2", "role:a"),
        ]

        assert policy_engine.remove_grouping("admin:1", "role:a") is True
        assert not policy_engine.has_grouping("admin:1", "role:a")
        assert policy_engine.remove_filtered_grouping(1, "role:a") is True
        assert policy_engine.get_grouping() == [Grouping("admin:1", "role:b")]

    def test_roles(self, policy_engine, policy_store):
        assert policy_engine.add_role("role:empty") is True
        assert policy_engine.add_role("role:empty") is False
        policy_engine.add_grouping("admin:1", "role:assigned")

        assert policy_engine.roles() == ["role:assigned", "role:empty"]
        assert ("role", "role:empty") in policy_store.load_all()

        assert policy_engine.remove_role("role:empty") is True
        assert not policy_engine.has_role("role:empty")

    def test_stats(self, policy_engine):
        policy_engine.add_role("role:a")
        policy_engine.add_policy("role:a", "/admin/x", "GET")
        policy_engine.add_grouping("admin:1", "role:a")

        assert policy_engine.stats() == {"roles": 1, "policies": 1, "groupings": 1}


class TestLoad:
    """Test cases for loading state from the store."""

    def test_load_reads_all_row_kinds(self):
        store = InMemoryPolicyStore([
            ("role", "role:empty"),
            ("p", "role:a", "/admin/x", "GET"),
            ("g", "admin:1", "role:a"),
        ])
        engine = PolicyEngine(store)
        engine.load()

        assert engine.enforce("admin:1", "/admin/x", "GET")
        assert engine.roles() == ["role:a", "role:empty"]

    def test_legacy_anchor_rows_mark_role_existence(self):
        store = InMemoryPolicyStore([("g", "role:legacy", "role:__anchor__")])
        engine = PolicyEngine(store)
        engine.load()

        assert engine.roles() == ["role:legacy"]
        assert engine.get_roles_for("role:legacy") == []

    def test_malformed_rows_are_skipped(self):
        store = InMemoryPolicyStore([
            ("p", "role:a", "/admin/x"),
            ("g", "admin:1"),
            ("p", "role:a", "/admin/y", "GET"),
        ])
        engine = PolicyEngine(store)
        engine.load()

        assert engine.get_policy() == [Policy("role:a", "/admin/y", "GET")]

    def test_reload_replaces_state(self, policy_store):
        engine = PolicyEngine(policy_store)
        engine.add_policy("role:a", "/admin/x", "GET")

        policy_store.delete(("p", "role:a", "/admin/x", "GET"))
        engine.load()

        assert engine.get_policy() == []


class TestStoreFailures:
    """A failed store write leaves memory untouched."""

    def _failing_engine(self):
        store = MagicMock(spec=PolicyStore)
        store.load_all.return_value = []
        store.insert.side_effect = PolicyStoreError("database down")
        store.insert_many.side_effect = PolicyStoreError("database down")
        engine = PolicyEngine(store)
        engine.load()
        return engine

    def test_add_policy_failure(self):
        engine = self._failing_engine()

        with pytest.raises(PolicyStoreError):
            engine.add_policy("role:a", "/admin/x", "GET")

        assert not engine.has_policy("role:a", "/admin/x", "GET")
        assert not engine.enforce("role:a", "/admin/x", "GET")

    def test_add_policies_failure(self):
        engine = self._failing_engine()

        with pytest.raises(PolicyStoreError):
            engine.add_policies([("role:a", "/admin/x", "GET"), ("role:a", "/admin/y", "GET")])

        assert engine.get_policy() == []

    def test_add_grouping_failure(self):
        engine = self._failing_engine()

        with pytest.raises(PolicyStoreError):
            engine.add_grouping("admin:1", "role:a")

        assert engine.get_roles_for("admin:1") == []


class TestSQLPolicyStore:
    """Test cases for the SQL policy store on in-memory SQLite."""

    @pytest.fixture
    def sql_store(self):
        engine = build_engine("sqlite://")
        store = SQLPolicyStore(engine, table_name="test_rules")
        store.ensure_schema()
        yield store
        engine.dispose()

    def test_insert_and_load(self, sql_store):
        assert sql_store.insert(("p", "role:a", "/admin/x", "GET")) is True
        assert sql_store.insert(("g", "admin:1", "role:a")) is True
        assert sql_store.insert(("role", "role:a")) is True

        assert sql_store.load_all() == [
            ("p", "role:a", "/admin/x", "GET"),
            ("g", "admin:1", "role:a"),
            ("role", "role:a"),
        ]

    def test_duplicate_insert_returns_false(self, sql_store):
        assert sql_store.insert(("p", "role:a", "/admin/x", "GET")) is True
        assert sql_store.insert(("p", "role:a", "/admin/x", "GET")) is False

    def test_delete(self, sql_store):
        sql_store.insert(("g", "admin:1", "role:a"))

        assert sql_store.delete(("g", "admin:1", "role:a")) is True
        assert sql_store.delete(("g", "admin:1", "role:a")) is False

    def test_batch_insert_skips_stored_rows(self, sql_store):
        sql_store.insert(("p", "role:a", "/admin/x", "GET"))

        sql_store.insert_many([
            ("p", "role:a", "/admin/y", "GET"),
            ("p", "role:a", "/admin/x", "GET"),
            ("p", "role:a", "/admin/y", "GET"),
        ])

        assert sql_store.load_all() == [
            ("p", "role:a", "/admin/x", "GET"),
            ("p", "role:a", "/admin/y", "GET"),
        ]

    def test_batch_insert_failure_is_wrapped(self, sql_store):
        sql_store.table.drop(sql_store._engine)

        with pytest.raises(PolicyStoreError):
            sql_store.insert_many([("p", "role:a", "/admin/x", "GET")])

    def test_bootstrap_from_two_engines_on_one_database(self, sql_store):
        """Two workers load the same empty table, then both bootstrap."""
        engine_a = PolicyEngine(sql_store)
        engine_b = PolicyEngine(SQLPolicyStore(sql_store._engine, table_name="test_rules"))
        engine_a.load()
        engine_b.load()

        added = bootstrap_builtin_roles(RoleRegistry(engine_a))
        rows = sorted(sql_store.load_all())

        assert added > 0
        assert bootstrap_builtin_roles(RoleRegistry(engine_b)) == added
        assert sorted(sql_store.load_all()) == rows
        assert engine_b.enforce("role:support", "/admin/users", "GET")

    def test_engine_round_trip(self, sql_store):
        engine = PolicyEngine(sql_store)
        engine.add_policy("role:a", "/admin/x/:id", "GET")
        engine.add_grouping("admin:9", "role:a")

        reloaded = PolicyEngine(sql_store)
        reloaded.load()
        assert reloaded.enforce("admin:9", "/admin/x/1", "GET")

    def test_ping(self, sql_store):
        assert sql_store.ping() is True


def test_concurrent_reads_and_writes(policy_engine):
    """Readers and writers interleave without errors."""
    policy_engine.add_grouping("admin:1", "role:a")
    errors = []

    def writer(n):
        try:
            for i in range(50):
                policy_engine.add_policy("role:a", f"/admin/w{n}/{i}", "GET")
        except Exception as e:  # pragma: no cover
            errors.append(e)

    def reader():
        try:
            for i in range(200):
                policy_engine.enforce("admin:1", f"/admin/w0/{i % 50}", "GET")
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
    threads += [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(policy_engine.get_filtered_policy(0, "role:a")) == 150
    assert policy_engine.enforce("admin:1", "/admin/w2/49", "GET")
