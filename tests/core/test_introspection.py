"""Tests for ``anybase.core.adapters.introspection``: pg_indexes definitions -> Index."""

from __future__ import annotations

import pytest

from anybase.core.adapters.introspection import element_field, parse_index_definition
from anybase.core.adapters.postgresql import index_ddl
from anybase.core.types import Index


class TestElementField:
    @pytest.mark.parametrize(
        "element, field",
        [
            ("(data -> 'email'::text)", "email"),
            ("COALESCE((data -> 'email'::text), 'null'::jsonb)", "email"),
            ("((data -> 'address'::text) -> 'city'::text)", "address.city"),
            ("(data #> '{address,city}'::text[])", "address.city"),
            ("(data #> '{\"a b\",c}'::text[])", "a b.c"),
            ("_created_at", "_created_at"),
            ('"_version"', "_version"),
        ],
    )
    def test_fields(self, element, field):
        assert element_field(element) == field

    def test_unrecognized(self):
        assert element_field("lower((data ->> 1))") is None


class TestParseIndexDefinition:
    def test_unique_payload_index(self):
        index = parse_index_definition(
            "users__email_1",
            "CREATE UNIQUE INDEX users__email_1 ON public.users USING btree "
            "(COALESCE((data -> 'email'::text), 'null'::jsonb)) WHERE (_deleted_at IS NULL)",
        )
        assert index.keys == {"email": 1}
        assert index.unique is True
        assert index.sparse is False
        assert index.partial is False

    def test_compound_descending(self):
        index = parse_index_definition(
            "audit_logs__user_id_1_created_at_-1",
            "CREATE INDEX \"audit_logs__user_id_1_created_at_-1\" ON public.audit_logs USING btree "
            "((data -> 'user_id'::text), (data -> 'created_at'::text) DESC)",
        )
        assert index.keys == {"user_id": 1, "created_at": -1}
        assert list(index.keys) == ["user_id", "created_at"]

    def test_sparse_predicate(self):
        index = parse_index_definition(
            "users__username_1",
            "CREATE UNIQUE INDEX users__username_1 ON public.users USING btree "
            "(COALESCE((data -> 'username'::text), 'null'::jsonb)) "
            "WHERE ((_deleted_at IS NULL) AND ((data -> 'username'::text) IS NOT NULL))",
        )
        assert index.unique is True
        assert index.sparse is True
        assert index.keys == {"username": 1}

    def test_gin_index(self):
        index = parse_index_definition(
            "products__sku_1",
            "CREATE INDEX products__sku_1 ON public.products USING gin ((data -> 'sku'::text))",
        )
        assert index.keys == {"sku": 1}
        assert index.unique is False

    def test_primary_key_column(self):
        index = parse_index_definition(
            "users_pkey", "CREATE UNIQUE INDEX users_pkey ON public.users USING btree (_id)"
        )
        assert index.keys == {"_id": 1}
        assert index.unique is True

    def test_system_column_index(self):
        index = parse_index_definition(
            "idx_users_created_at",
            "CREATE INDEX idx_users_created_at ON public.users USING btree (_created_at)",
        )
        assert index.keys == {"_created_at": 1}

    def test_data_gin_index(self):
        index = parse_index_definition(
            "idx_users_data", "CREATE INDEX idx_users_data ON public.users USING gin (data)"
        )
        assert index.keys == {"data": 1}

    def test_name_fallback(self):
        index = parse_index_definition(
            "legacy_updated_at", "CREATE INDEX legacy_updated_at ON public.users USING btree (md5((_updated_at)::text))"
        )
        assert index.keys == {"_updated_at": 1}

    def test_unparseable_is_partial(self):
        index = parse_index_definition(
            "weird", "CREATE INDEX weird ON public.users USING btree (lower((data ->> 1)))"
        )
        assert index.keys == {}
        assert index.partial is True

    def test_never_raises_on_garbage(self):
        index = parse_index_definition("x", "not sql at all (")
        assert index.partial is True


class TestDDLRoundTrip:
    """Indexes created by ``index_ddl`` read back to the same descriptor."""

    @pytest.mark.parametrize(
        "index",
        [
            Index(name="email_1", keys={"email": 1}, unique=True),
            Index(name="username_1", keys={"username": 1}, unique=True, sparse=True),
            Index(name="created_at_-1", keys={"created_at": -1}),
            Index(name="action_1_created_at_-1", keys={"action": 1, "created_at": -1}),
            Index(name="address.city_1", keys={"address.city": 1}),
            Index(name="sku_1", keys={"sku": 1}),
        ],
    )
    def test_symmetry(self, index):
        physical, sql = index_ddl("users", index)
        # pg_indexes shows the statement without IF NOT EXISTS
        definition = sql.replace(" IF NOT EXISTS", "")
        parsed = parse_index_definition(physical, definition)
        assert parsed.keys == index.keys
        assert parsed.unique == index.unique
        assert parsed.sparse == index.sparse
