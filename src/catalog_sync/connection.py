"""Connection URI construction for remote database resources."""

from urllib.parse import quote, urlsplit

import structlog

from .models import LocalDatabase

logger = structlog.get_logger(__name__)

NAME_LIMIT = 250

# Local engine type -> driver identifier understood by the remote catalog
DRIVERS = {
    "postgresql": "postgresql+psycopg2",
    "mysql": "mysql+pymysql",
    "clickhouse": "clickhouse+native",
}

# Postgres JDBC parameters the remote catalog's driver rejects
POSTGRES_DROPPED_PARAMS = {"stringtype"}


def resolve_driver(engine: str | None) -> str | None:
    """Map an engine type to its driver identifier, None if unsupported."""
    if not engine or not engine.strip():
        return None
    return DRIVERS.get(engine.strip().lower())


def build_connection_uri(database: LocalDatabase) -> str | None:
    """
    Build the remote connection URI for a local database.

    Accepts JDBC-style (``jdbc:postgresql://host:5432/db?x=y``) or plain
    URLs. Credentials come from the database record and are
    percent-encoded. Returns None when the engine is unsupported or the URL
    has no host.
    """
    if not database.url or not database.url.strip():
        return None
    driver = resolve_driver(database.engine)
    if driver is None:
        logger.warning("unsupported_database_engine", database_id=database.id, engine=database.engine)
        return None

    raw_url = database.url.strip()
    if raw_url.startswith("jdbc:"):
        raw_url = raw_url[len("jdbc:"):]
    try:
        parts = urlsplit(raw_url)
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        logger.warning("connection_url_parse_failed", database_id=database.id, error=str(e))
        return None
    if not host:
        return None
    if ":" in host:
        host = f"[{host}]"

    db_name = database.database
    if not db_name and parts.path:
        db_name = parts.path.lstrip("/")
    query = sanitize_query(parts.query, database.engine)

    user = _encode(database.username)
    password = _encode(database.password)

    uri = f"{driver}://"
    if user:
        uri += user
        if password:
            uri += f":{password}"
        uri += "@"
    uri += host
    if port:
        uri += f":{port}"
    if db_name:
        uri += f"/{db_name}"
    if query:
        uri += f"?{query}"
    return uri


def sanitize_query(query: str | None, engine: str | None) -> str | None:
    """Drop query parameters the remote driver does not accept.

    Only Postgres parameters are filtered; other engines pass through.
    """
    if not query or not query.strip():
        return None
    if (engine or "").strip().lower() != "postgresql":
        return query
    retained = []
    for part in query.split("&"):
        key = part.split("=", 1)[0].strip()
        if not key:
            continue
        if key.lower() in POSTGRES_DROPPED_PARAMS:
            continue
        retained.append(part)
    return "&".join(retained) if retained else None


def strip_credentials(uri: str | None) -> str:
    """Remove the password from a URI, keeping the user name.

    Used for comparison (the remote side masks passwords) and for logs.
    """
    if not uri or not uri.strip():
        return ""
    normalized = uri.strip()
    scheme_index = normalized.find("://")
    at_index = normalized.find("@")
    if scheme_index >= 0 and at_index > scheme_index:
        prefix = normalized[: scheme_index + 3]
        credentials = normalized[scheme_index + 3 : at_index]
        colon_index = credentials.find(":")
        if colon_index > 0:
            normalized = prefix + credentials[:colon_index] + normalized[at_index:]
    return " ".join(normalized.split())


def mask_uri(uri: str | None) -> str:
    return strip_credentials(uri)


def remote_database_name(database: LocalDatabase, prefix: str) -> str:
    """Stable remote name for a local database: ``{prefix}_{id}_{name}``."""
    name = f"{prefix}_{database.id}_{database.name or 'database'}"
    return name[:NAME_LIMIT]


def resolve_schema(database: LocalDatabase | None) -> str | None:
    """Database default schema; Postgres falls back to ``public``."""
    if database is None:
        return None
    if database.schema_name and database.schema_name.strip():
        return database.schema_name
    if (database.engine or "").strip().lower() == "postgresql":
        return "public"
    return None


def _encode(value: str | None) -> str:
    if not value or not value.strip():
        return ""
    return quote(value, safe="")
