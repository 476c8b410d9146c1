"""Connection string builder and parser.

The operator-facing connection string is the ADO.NET key/value form
(`Key=value;Key=value`) for all three providers. This module is the only
place that knows the per-provider key names:

  postgres   Host=..;Port=5432;Database=..;Username=..;Password=..
             [SSL Mode=..][Root Certificate=..][SSL Certificate=..][SSL Key=..]
  sqlserver  Server=host[,port];Database=..;User Id=..;Password=..
             [TrustServerCertificate=True][Encrypt=True;MinTLSVersion=..]
  mysql      Server=..;Port=3306;Database=..;User=..;Password=..
             [SslMode=..][TlsVersion=..][SslCa=..][SslCert=..][SslKey=..]

Everything here is pure: no network, no filesystem (certificate files are
only opened by `target_engine_options` when an engine is created).
"""

from __future__ import annotations

import enum
import re
import ssl
from dataclasses import dataclass, fields, replace

from sqlalchemy.engine import URL

from setupkit.config import settings
from setupkit.middleware.exceptions import SetupValidationError


class DatabaseProvider(str, enum.Enum):
    POSTGRES = "postgres"
    SQLSERVER = "sqlserver"
    MYSQL = "mysql"


PROVIDER_ALIASES: dict[str, DatabaseProvider] = {
    "postgres": DatabaseProvider.POSTGRES,
    "postgresql": DatabaseProvider.POSTGRES,
    "sqlserver": DatabaseProvider.SQLSERVER,
    "mssql": DatabaseProvider.SQLSERVER,
    "mysql": DatabaseProvider.MYSQL,
}

DEFAULT_PORTS: dict[DatabaseProvider, str] = {
    DatabaseProvider.POSTGRES: "5432",
    DatabaseProvider.MYSQL: "3306",
}

# Database to connect to when the target database may not exist yet.
ADMIN_DATABASES: dict[DatabaseProvider, str | None] = {
    DatabaseProvider.POSTGRES: "postgres",
    DatabaseProvider.SQLSERVER: "master",
    DatabaseProvider.MYSQL: None,
}


def normalize_provider(value: str | None) -> DatabaseProvider:
    """Map a provider tag (or alias) to a DatabaseProvider, or raise."""
    provider = PROVIDER_ALIASES.get((value or "").strip().lower())
    if provider is None:
        raise SetupValidationError(
            "Unsupported provider. Use postgres, sqlserver or mysql.", field="provider"
        )
    return provider


@dataclass(frozen=True)
class ConnectionParameters:
    host: str = ""
    port: str | None = None
    database: str = ""
    user: str = ""
    password: str = ""
    ssl_mode: str | None = None
    tls_min_version: str | None = None
    root_cert_path: str | None = None
    client_cert_path: str | None = None
    client_key_path: str | None = None
    trust_server_certificate: bool = False

    def is_complete(self) -> bool:
        return bool(
            self.host.strip()
            and self.database.strip()
            and self.user.strip()
            and self.password
        )


# ── Building ────────────────────────────────────────────────

def _format_value(value: str) -> str:
    if any(ch in value for ch in ';"\'') or value != value.strip():
        return '"' + value.replace('"', '""') + '"'
    return value


def _join(parts: list[tuple[str, str]]) -> str:
    return ";".join(f"{key}={_format_value(value)}" for key, value in parts)


def _clean(value: str | None) -> str:
    return (value or "").strip()


def _checked_port(value: str | None) -> str:
    """Blank stays blank; anything else must be a TCP port number."""
    port = _clean(value)
    if port and not (port.isascii() and port.isdigit() and 1 <= int(port) <= 65535):
        raise SetupValidationError("Port must be a number between 1 and 65535.", field="port")
    return port


def build_connection_string(provider: DatabaseProvider | str, params: ConnectionParameters) -> str:
    """Assemble the connection string for `provider`.

    Returns "" when host, database, user or password is blank: that means
    "not filled in yet", not an error.
    """
    provider = normalize_provider(provider) if isinstance(provider, str) else provider
    if not params.is_complete():
        return ""

    host = _clean(params.host)
    port = _checked_port(params.port)
    database = _clean(params.database)
    user = _clean(params.user)
    ssl_mode = _clean(params.ssl_mode)
    tls = _clean(params.tls_min_version)

    if provider == DatabaseProvider.SQLSERVER:
        parts = [
            ("Server", f"{host},{port}" if port else host),
            ("Database", database),
            ("User Id", user),
            ("Password", params.password),
        ]
        if params.trust_server_certificate:
            parts.append(("TrustServerCertificate", "True"))
        if tls:
            parts.append(("Encrypt", "True"))
            parts.append(("MinTLSVersion", tls))
        return _join(parts)

    if provider == DatabaseProvider.MYSQL:
        parts = [
            ("Server", host),
            ("Port", port or DEFAULT_PORTS[provider]),
            ("Database", database),
            ("User", user),
            ("Password", params.password),
        ]
        optional = [
            ("SslMode", ssl_mode),
            ("TlsVersion", tls),
            ("SslCa", _clean(params.root_cert_path)),
            ("SslCert", _clean(params.client_cert_path)),
            ("SslKey", _clean(params.client_key_path)),
        ]
        return _join(parts + [(k, v) for k, v in optional if v])

    parts = [
        ("Host", host),
        ("Port", port or DEFAULT_PORTS[provider]),
        ("Database", database),
        ("Username", user),
        ("Password", params.password),
    ]
    optional = [
        ("SSL Mode", ssl_mode),
        ("Root Certificate", _clean(params.root_cert_path)),
        ("SSL Certificate", _clean(params.client_cert_path)),
        ("SSL Key", _clean(params.client_key_path)),
    ]
    return _join(parts + [(k, v) for k, v in optional if v])


def build_managed_connection_string(user: str, password: str) -> str:
    """Connection string of the managed container; only credentials vary."""
    return build_connection_string(
        DatabaseProvider.POSTGRES,
        ConnectionParameters(
            host=settings.managed_host,
            port=str(settings.managed_port),
            database=settings.managed_database,
            user=user,
            password=password,
            ssl_mode="prefer",
        ),
    )


# ── Parsing ─────────────────────────────────────────────────

def _malformed() -> SetupValidationError:
    return SetupValidationError("Malformed connection string.", field="connection_string")


def _tokenize(value: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    i, n = 0, len(value)
    while i < n:
        while i < n and value[i] in "; \t":
            i += 1
        if i >= n:
            break
        eq = value.find("=", i)
        if eq == -1:
            raise _malformed()
        key = value[i:eq].strip().lower()
        if ";" in key or not key:
            raise _malformed()

        j = eq + 1
        while j < n and value[j] in " \t":
            j += 1
        if j < n and value[j] in "\"'":
            quote = value[j]
            j += 1
            buf = []
            while j < n:
                if value[j] == quote:
                    if j + 1 < n and value[j + 1] == quote:
                        buf.append(quote)
                        j += 2
                        continue
                    j += 1
                    break
                buf.append(value[j])
                j += 1
            else:
                raise _malformed()
            semi = value.find(";", j)
            semi = n if semi == -1 else semi
            if value[j:semi].strip():
                raise _malformed()
            pairs[key] = "".join(buf)
        else:
            semi = value.find(";", j)
            semi = n if semi == -1 else semi
            pairs[key] = value[j:semi].strip()
        i = semi + 1
    return pairs


_KEYS: dict[DatabaseProvider, dict[str, str]] = {
    DatabaseProvider.POSTGRES: {
        "host": "host", "server": "host",
        "port": "port",
        "database": "database", "db": "database",
        "username": "user", "user id": "user", "user": "user", "userid": "user", "uid": "user",
        "password": "password", "pwd": "password",
        "ssl mode": "ssl_mode", "sslmode": "ssl_mode",
        "root certificate": "root_cert_path", "sslrootcert": "root_cert_path",
        "ssl certificate": "client_cert_path", "sslcert": "client_cert_path",
        "ssl key": "client_key_path", "sslkey": "client_key_path",
    },
    DatabaseProvider.SQLSERVER: {
        "server": "host", "data source": "host", "address": "host",
        "database": "database", "initial catalog": "database",
        "user id": "user", "uid": "user", "user": "user",
        "password": "password", "pwd": "password",
        "trustservercertificate": "trust_server_certificate",
        "mintlsversion": "tls_min_version",
    },
    DatabaseProvider.MYSQL: {
        "server": "host", "host": "host",
        "port": "port",
        "database": "database",
        "user": "user", "user id": "user", "uid": "user", "username": "user",
        "password": "password", "pwd": "password",
        "sslmode": "ssl_mode", "ssl mode": "ssl_mode",
        "tlsversion": "tls_min_version",
        "sslca": "root_cert_path",
        "sslcert": "client_cert_path",
        "sslkey": "client_key_path",
    },
}


def parse_connection_string(provider: DatabaseProvider | str, value: str) -> ConnectionParameters:
    """Parse a connection string back into ConnectionParameters.

    Unknown keys are ignored. Raises SetupValidationError on malformed input.
    """
    provider = normalize_provider(provider) if isinstance(provider, str) else provider
    mapping = _KEYS[provider]
    values: dict = {}
    for key, raw in _tokenize(value or "").items():
        name = mapping.get(key)
        if name is None:
            continue
        if name == "trust_server_certificate":
            values[name] = raw.strip().lower() in ("true", "yes", "1")
        else:
            values[name] = raw

    if provider == DatabaseProvider.SQLSERVER and "," in values.get("host", ""):
        host, _, port = values["host"].partition(",")
        values["host"], values["port"] = host.strip(), port.strip()
    if "port" in values:
        values["port"] = _checked_port(values["port"])

    known = {f.name for f in fields(ConnectionParameters)}
    return ConnectionParameters(**{k: v for k, v in values.items() if k in known})


# ── Masking ─────────────────────────────────────────────────

_SECRET_RE = re.compile(r'(?i)\b(password|pwd)(\s*=\s*)("(?:[^"]|"")*"|\'(?:[^\']|\'\')*\'|[^;]*)')


def mask_connection_string(value: str | None) -> str:
    """Hide secret values; everything else stays readable for the operator."""
    if not value or not value.strip():
        return ""
    return _SECRET_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}****", value)


# ── Engine options ──────────────────────────────────────────

def _postgres_ssl(params: ConnectionParameters):
    mode = (params.ssl_mode or "").strip().lower()
    mode = {"verifyfull": "verify-full", "verifyca": "verify-ca"}.get(mode, mode)
    has_files = params.root_cert_path or params.client_cert_path
    if not mode:
        return None
    if not has_files:
        return mode
    if mode == "disable":
        return False
    context = ssl.create_default_context(cafile=params.root_cert_path or None)
    if mode != "verify-full":
        context.check_hostname = False
    if mode in ("prefer", "require", "allow"):
        context.verify_mode = ssl.CERT_NONE
    if params.client_cert_path:
        context.load_cert_chain(params.client_cert_path, params.client_key_path or None)
    return context


def _mysql_ssl(params: ConnectionParameters):
    mode = (params.ssl_mode or "").strip().lower()
    if mode in ("", "none", "disabled", "preferred"):
        return None
    context = ssl.create_default_context(cafile=params.root_cert_path or None)
    if mode != "verifyfull":
        context.check_hostname = False
    if mode == "required":
        context.verify_mode = ssl.CERT_NONE
    if params.tls_min_version:
        versions = {"1.2": ssl.TLSVersion.TLSv1_2, "1.3": ssl.TLSVersion.TLSv1_3}
        version = versions.get(re.sub(r"(?i)^tlsv?", "", params.tls_min_version.strip()))
        if version is not None:
            context.minimum_version = version
    if params.client_cert_path:
        context.load_cert_chain(params.client_cert_path, params.client_key_path or None)
    return context


def target_engine_options(
    provider: DatabaseProvider | str,
    connection_string: str,
    *,
    admin: bool = False,
    timeout: float | None = None,
) -> tuple[URL, dict]:
    """Translate a connection string into a SQLAlchemy async URL + connect_args.

    With `admin=True` the URL points at the provider's administrative
    database, for checks that must work before the target database exists.
    """
    provider = normalize_provider(provider) if isinstance(provider, str) else provider
    params = parse_connection_string(provider, connection_string)
    if admin:
        params = replace(params, database=ADMIN_DATABASES[provider] or "")
    timeout = timeout or settings.connect_timeout_seconds
    port = int(params.port) if params.port else None
    connect_args: dict = {}

    if provider == DatabaseProvider.SQLSERVER:
        query = {"driver": settings.sqlserver_odbc_driver}
        if params.trust_server_certificate:
            query["TrustServerCertificate"] = "yes"
        if params.tls_min_version:
            query["Encrypt"] = "yes"
        url = URL.create(
            "mssql+aioodbc",
            username=params.user,
            password=params.password,
            host=params.host,
            port=port,
            database=params.database or None,
            query=query,
        )
        connect_args["timeout"] = int(timeout)
        return url, connect_args

    if provider == DatabaseProvider.MYSQL:
        url = URL.create(
            "mysql+aiomysql",
            username=params.user,
            password=params.password,
            host=params.host,
            port=port,
            database=params.database or None,
        )
        connect_args["connect_timeout"] = int(timeout)
        context = _mysql_ssl(params)
        if context is not None:
            connect_args["ssl"] = context
        return url, connect_args

    url = URL.create(
        "postgresql+asyncpg",
        username=params.user,
        password=params.password,
        host=params.host,
        port=port,
        database=params.database or None,
    )
    connect_args["timeout"] = timeout
    ssl_option = _postgres_ssl(params)
    if ssl_option is not None:
        connect_args["ssl"] = ssl_option
    return url, connect_args
