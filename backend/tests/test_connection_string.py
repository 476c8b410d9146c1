"""Tests for the connection string builder, parser and masking."""

import pytest

from setupkit.config import settings
from setupkit.middleware.exceptions import SetupValidationError
from setupkit.services.connection_string import (
    ConnectionParameters,
    DatabaseProvider,
    build_connection_string,
    build_managed_connection_string,
    mask_connection_string,
    normalize_provider,
    parse_connection_string,
    target_engine_options,
)


@pytest.mark.unit
class TestBuildConnectionString:

    def test_postgres_default_port(self):
        params = ConnectionParameters(
            host="localhost", database="app", user="app_user", password="x"
        )
        assert build_connection_string(DatabaseProvider.POSTGRES, params) == (
            "Host=localhost;Port=5432;Database=app;Username=app_user;Password=x"
        )

    def test_postgres_ssl_only_when_set(self):
        params = ConnectionParameters(
            host="db", port="6432", database="app", user="u", password="p",
            ssl_mode="Require", root_cert_path="/certs/ca.pem",
        )
        assert build_connection_string("postgresql", params) == (
            "Host=db;Port=6432;Database=app;Username=u;Password=p;"
            "SSL Mode=Require;Root Certificate=/certs/ca.pem"
        )

    @pytest.mark.parametrize("missing", ["host", "database", "user", "password"])
    def test_incomplete_returns_empty(self, missing):
        values = {"host": "h", "database": "d", "user": "u", "password": "p"}
        values[missing] = "  " if missing != "password" else ""
        params = ConnectionParameters(**values)
        assert build_connection_string(DatabaseProvider.POSTGRES, params) == ""

    def test_sqlserver_port_and_tls(self):
        params = ConnectionParameters(
            host="sql01", port="1433", database="app", user="sa", password="p",
            trust_server_certificate=True, tls_min_version="1.2",
        )
        assert build_connection_string(DatabaseProvider.SQLSERVER, params) == (
            "Server=sql01,1433;Database=app;User Id=sa;Password=p;"
            "TrustServerCertificate=True;Encrypt=True;MinTLSVersion=1.2"
        )

    def test_sqlserver_without_port(self):
        params = ConnectionParameters(host="sql01", database="app", user="sa", password="p")
        assert build_connection_string("mssql", params) == (
            "Server=sql01;Database=app;User Id=sa;Password=p"
        )

    def test_mysql(self):
        params = ConnectionParameters(
            host="maria", database="app", user="root", password="p", ssl_mode="Required",
        )
        assert build_connection_string(DatabaseProvider.MYSQL, params) == (
            "Server=maria;Port=3306;Database=app;User=root;Password=p;SslMode=Required"
        )

    def test_value_with_separator_is_quoted(self):
        params = ConnectionParameters(host="h", database="d", user="u", password='a;b"c')
        value = build_connection_string(DatabaseProvider.POSTGRES, params)
        assert value.endswith('Password="a;b""c"')
        assert parse_connection_string(DatabaseProvider.POSTGRES, value).password == 'a;b"c'

    def test_managed_connection_string(self):
        value = build_managed_connection_string("alice", "s3cret")
        params = parse_connection_string(DatabaseProvider.POSTGRES, value)
        assert params.host == settings.managed_host
        assert params.port == str(settings.managed_port)
        assert params.database == settings.managed_database
        assert params.user == "alice"
        assert params.ssl_mode == "prefer"

    def test_unknown_provider(self):
        with pytest.raises(SetupValidationError) as exc:
            normalize_provider("oracle")
        assert exc.value.field == "provider"

    @pytest.mark.parametrize("port", ["54x3", "0", "65536", "-1", "²"])
    def test_invalid_port_rejected(self, port):
        params = ConnectionParameters(host="db", port=port, database="app", user="u", password="p")
        with pytest.raises(SetupValidationError) as exc:
            build_connection_string(DatabaseProvider.POSTGRES, params)
        assert exc.value.field == "port"

    def test_blank_port_uses_default(self):
        params = ConnectionParameters(host="db", port=" ", database="app", user="u", password="p")
        assert "Port=5432" in build_connection_string(DatabaseProvider.POSTGRES, params)


FULL_PARAMETERS = {
    DatabaseProvider.POSTGRES: ConnectionParameters(
        host="db.internal", port="6432", database="app", user="app_user", password='p;w"d',
        ssl_mode="VerifyFull", root_cert_path="/certs/ca.pem",
        client_cert_path="/certs/client.pem", client_key_path="/certs/client.key",
    ),
    DatabaseProvider.SQLSERVER: ConnectionParameters(
        host="sql01", port="1444", database="app", user="sa", password='p;w"d',
        tls_min_version="1.2", trust_server_certificate=True,
    ),
    DatabaseProvider.MYSQL: ConnectionParameters(
        host="maria", port="3307", database="app", user="root", password='p;w"d',
        ssl_mode="VerifyCA", tls_min_version="TLSv1.3", root_cert_path="/certs/ca.pem",
        client_cert_path="/certs/client.pem", client_key_path="/certs/client.key",
    ),
}


@pytest.mark.unit
@pytest.mark.parametrize("provider", list(FULL_PARAMETERS))
def test_build_then_parse_recovers_fields(provider):
    params = FULL_PARAMETERS[provider]
    assert parse_connection_string(provider, build_connection_string(provider, params)) == params


@pytest.mark.unit
class TestParseConnectionString:

    def test_keys_are_case_insensitive(self):
        params = parse_connection_string(
            "postgres", "host=db;PORT=5433;database=app;user id=u;PWD=p"
        )
        assert (params.host, params.port, params.database, params.user, params.password) == (
            "db", "5433", "app", "u", "p"
        )

    def test_sqlserver_host_port_split(self):
        params = parse_connection_string(
            "sqlserver", "Data Source=sql01,1444;Initial Catalog=app;User Id=sa;Password=p;TrustServerCertificate=yes"
        )
        assert params.host == "sql01"
        assert params.port == "1444"
        assert params.database == "app"
        assert params.trust_server_certificate is True

    def test_unknown_keys_ignored(self):
        params = parse_connection_string(
            "mysql", "Server=m;Database=d;User=u;Password=p;Pooling=false"
        )
        assert params.is_complete()

    @pytest.mark.parametrize("value", ["Host", "Host=db;Password=\"unterminated", "=x"])
    def test_malformed(self, value):
        with pytest.raises(SetupValidationError) as exc:
            parse_connection_string("postgres", value)
        assert exc.value.field == "connection_string"

    @pytest.mark.parametrize(
        "provider, value",
        [
            ("postgres", "Host=db;Port=54x3;Database=app;Username=u;Password=p"),
            ("sqlserver", "Server=sql01,14x4;Database=app;User Id=sa;Password=p"),
            ("mysql", "Server=m;Port=70000;Database=app;User=u;Password=p"),
        ],
    )
    def test_invalid_port(self, provider, value):
        with pytest.raises(SetupValidationError) as exc:
            parse_connection_string(provider, value)
        assert exc.value.field == "port"


@pytest.mark.unit
class TestMasking:

    def test_password_hidden(self):
        masked = mask_connection_string("Host=db;Username=u;Password=hunter2;Port=5432")
        assert "hunter2" not in masked
        assert masked == "Host=db;Username=u;Password=****;Port=5432"

    def test_quoted_and_pwd_alias(self):
        masked = mask_connection_string('Server=s;Pwd="a;b";Database=d')
        assert masked == "Server=s;Pwd=****;Database=d"

    def test_blank(self):
        assert mask_connection_string("") == ""
        assert mask_connection_string(None) == ""


@pytest.mark.unit
class TestEngineOptions:

    def test_postgres_url(self):
        url, connect_args = target_engine_options(
            "postgres", "Host=db;Port=5433;Database=app;Username=u;Password=p", timeout=4
        )
        assert url.drivername == "postgresql+asyncpg"
        assert (url.host, url.port, url.database, url.username) == ("db", 5433, "app", "u")
        assert connect_args == {"timeout": 4}

    def test_invalid_port_is_not_dropped(self):
        with pytest.raises(SetupValidationError):
            target_engine_options("postgres", "Host=db;Port=54x3;Database=app;Username=u;Password=p")

    def test_postgres_ssl_mode_without_files(self):
        _, connect_args = target_engine_options(
            "postgres", "Host=db;Database=app;Username=u;Password=p;SSL Mode=Require"
        )
        assert connect_args["ssl"] == "require"

    def test_admin_database(self):
        url, _ = target_engine_options(
            "postgres", "Host=db;Database=app;Username=u;Password=p", admin=True
        )
        assert url.database == "postgres"

    def test_sqlserver_url(self):
        url, connect_args = target_engine_options(
            "sqlserver",
            "Server=sql01,1433;Database=app;User Id=sa;Password=p;TrustServerCertificate=True",
            admin=True,
        )
        assert url.drivername == "mssql+aioodbc"
        assert url.database == "master"
        assert url.port == 1433
        assert url.query["TrustServerCertificate"] == "yes"
        assert url.query["driver"] == settings.sqlserver_odbc_driver
        assert "timeout" in connect_args

    def test_mysql_admin_has_no_database(self):
        url, connect_args = target_engine_options(
            "mysql", "Server=m;Database=app;User=u;Password=p", admin=True
        )
        assert url.drivername == "mysql+aiomysql"
        assert url.database is None
        assert "ssl" not in connect_args
