"""
Unit tests for engine configuration.

Tests cover:
- Loading from environment variables
- Validation of backend settings
- Request tenant resolution
"""

import pytest

from datastore.model_engine.config import DatabaseKind, EngineConfig, PostgresConfig, QueryConfig
from datastore.model_engine.context import RequestContext, TokenPayload


class TestDatabaseKind:
    """Tests for DatabaseKind."""

    @pytest.mark.parametrize(
        "value,kind",
        [("mongo", DatabaseKind.MONGODB), ("PostgreSQL", DatabaseKind.POSTGRES), ("sqlite", DatabaseKind.LOCAL)],
    )
    def test_aliases(self, value, kind):
        assert DatabaseKind.from_str(value) == kind

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid DATABASE_KIND"):
            DatabaseKind.from_str("oracle")


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_KIND", "TENANCY_ENABLED", "QUERY_DEFAULT_LIMIT", "MODEL_STRUCTURE_PATH"):
            monkeypatch.delenv(name, raising=False)
        config = EngineConfig.from_env()
        assert config.database == DatabaseKind.LOCAL
        assert config.query.default_limit == 10
        assert config.tenancy.enabled is False
        assert config.tenancy.tenant_key == "tenantId"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_KIND", "postgres")
        monkeypatch.setenv("POSTGRES_DSN", "postgresql://app@db/app")
        monkeypatch.setenv("TENANCY_ENABLED", "true")
        monkeypatch.setenv("QUERY_STRICT_CALCULATED_VALUES", "true")
        monkeypatch.setenv("LOCAL_DATA_DIR", "/tmp/engine")
        config = EngineConfig.from_env()
        assert config.database == DatabaseKind.POSTGRES
        assert config.postgres.conninfo() == "postgresql://app@db/app"
        assert config.tenancy.enabled is True
        assert config.query.strict_calculated_values is True
        assert config.local.path == "/tmp/engine/model_engine.db"

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError, match="QUERY_DEFAULT_LIMIT"):
            EngineConfig(query=QueryConfig(default_limit=-1)).validate()

    def test_pool_bounds_rejected(self):
        config = EngineConfig(
            database=DatabaseKind.POSTGRES, postgres=PostgresConfig(pool_min_size=5, pool_max_size=2)
        )
        with pytest.raises(ValueError, match="POSTGRES_POOL_MIN"):
            config.validate()

    def test_conninfo_from_parts(self):
        conninfo = PostgresConfig(host="db", password="secret").conninfo()
        assert conninfo == "host=db port=5432 user=postgres dbname=model_engine password=secret"


class TestRequestContext:
    """Tests for tenant resolution."""

    def test_token_wins(self):
        request = RequestContext(token=TokenPayload(tenant_id="t-token"), tenant_id="t-header")
        assert request.resolve_tenant() == "t-token"

    def test_request_tenant(self):
        assert RequestContext(tenant_id="t-header").resolve_tenant() == "t-header"

    def test_fallback(self):
        assert RequestContext().resolve_tenant("000") == "000"

    def test_token_from_dict(self):
        token = TokenPayload.from_dict({"userId": "u1", "tenantId": "t1", "role": "admin"})
        assert (token.user_id, token.tenant_id, token.role) == ("u1", "t1", "admin")
