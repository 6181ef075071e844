"""HTTP client for the remote BI catalog."""

import threading
from typing import Any

import httpx
import structlog

from . import metrics
from .auth import AuthHeaders, AuthMode, AuthSessionManager
from .config import Settings
from .errors import CatalogAPIError, CatalogError, DuplicateResourceError, is_duplicate_resource
from .models import Column, Metric, RemoteDatabase, RemoteDataset, as_int

logger = structlog.get_logger(__name__)

DATABASE_API = "/api/v1/database/"
DATASET_API = "/api/v1/dataset/"

# Statuses that trigger a token refresh and strategy fallback
AUTH_FAILURE_STATUSES = (401, 403)

# Upper bound on pages fetched by one listing
MAX_LIST_PAGES = 1000


class CatalogClient:
    """
    Typed operations over the remote catalog REST API.

    Every call goes through :meth:`request`, which asks the auth session
    manager for headers and, when a token-authenticated call is rejected
    with 401/403, refreshes once and retries, then falls back to the static
    key if one is configured.
    """

    def __init__(self, settings: Settings, http: httpx.Client | None = None):
        self.settings = settings
        self._client = http
        self._auth: AuthSessionManager | None = None
        # Guards lazy creation of the HTTP client and the auth manager
        self._setup_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        with self._setup_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.settings.normalized_base_url,
                    timeout=float(max(1, self.settings.timeout_seconds)),
                )
            return self._client

    @property
    def auth(self) -> AuthSessionManager:
        http = self.client
        with self._setup_lock:
            if self._auth is None:
                self._auth = AuthSessionManager(self.settings, http)
            return self._auth

    def close(self) -> None:
        """Close the HTTP client."""
        with self._setup_lock:
            if self._client:
                self._client.close()
                self._client = None
                self._auth = None

    def __enter__(self) -> "CatalogClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ========================================
    # Databases
    # ========================================

    def list_databases(self) -> list[RemoteDatabase]:
        databases = []
        for item in self._list_all(DATABASE_API):
            database = RemoteDatabase(
                remote_id=as_int(item.get("id")),
                name=_text(item.get("database_name")),
            )
            if database.remote_id is not None or database.name:
                databases.append(database)
        return databases

    def fetch_database(self, remote_id: int | None) -> RemoteDatabase | None:
        if remote_id is None:
            return None
        result = resolve_result(self.get(f"{DATABASE_API}{remote_id}"))
        if result is None:
            return None
        return RemoteDatabase(
            remote_id=as_int(result.get("id")),
            name=_text(result.get("database_name")),
            connection_uri=_text(result.get("sqlalchemy_uri")) or _text(result.get("sqlalchemy_uri_safe")),
            schema_name=_text(result.get("force_ctas_schema")),
        )

    def create_database(self, database: RemoteDatabase) -> int | None:
        """Create a database connection and return its remote id."""
        response = self._create(DATABASE_API, database_payload(database))
        return resolve_created_id(response)

    def update_database(self, remote_id: int, database: RemoteDatabase) -> None:
        self.put(f"{DATABASE_API}{remote_id}", database_payload(database))

    # ========================================
    # Datasets
    # ========================================

    def list_datasets(self) -> list[RemoteDataset]:
        datasets = []
        for item in self._list_all(DATASET_API):
            database = item.get("database") if isinstance(item.get("database"), dict) else {}
            dataset = RemoteDataset(
                remote_id=as_int(item.get("id")),
                table_name=_text(item.get("table_name")),
                schema_name=_text(item.get("schema")),
                sql=_text(item.get("sql")),
                database_remote_id=as_int(database.get("id")),
            )
            if dataset.remote_id is not None or dataset.table_name:
                datasets.append(dataset)
        return datasets

    def fetch_dataset(self, remote_id: int | None) -> RemoteDataset | None:
        """Fetch a dataset including its nested columns and metrics."""
        if remote_id is None:
            return None
        result = resolve_result(self.get(f"{DATASET_API}{remote_id}"))
        if result is None:
            return None
        database = result.get("database") if isinstance(result.get("database"), dict) else {}
        return RemoteDataset(
            remote_id=as_int(result.get("id")),
            table_name=_text(result.get("table_name")),
            schema_name=_text(result.get("schema")),
            sql=_text(result.get("sql")),
            time_column=_text(result.get("main_dttm_col")),
            database_remote_id=as_int(database.get("id")),
            columns=parse_columns(result.get("columns")),
            metrics=parse_metrics(result.get("metrics")),
        )

    def create_dataset(self, dataset: RemoteDataset) -> int | None:
        """Create a dataset and return its remote id."""
        payload = {
            "database": dataset.database_remote_id,
            "schema": dataset.schema_name,
            "table_name": dataset.table_name,
            "sql": dataset.sql,
            "template_params": "{}",
        }
        return resolve_created_id(self._create(DATASET_API, payload))

    def update_dataset(self, remote_id: int, dataset: RemoteDataset) -> None:
        self.put(f"{DATASET_API}{remote_id}", dataset_update_payload(dataset))

    def delete_dataset(self, remote_id: int | None) -> None:
        if remote_id is None:
            return
        self.delete(f"{DATASET_API}{remote_id}")

    def delete_column(self, dataset_id: int | None, column_id: int | None) -> None:
        if dataset_id is None or column_id is None:
            return
        self.delete(f"{DATASET_API}{dataset_id}/column/{column_id}")

    def delete_metric(self, dataset_id: int | None, metric_id: int | None) -> None:
        if dataset_id is None or metric_id is None:
            return
        self.delete(f"{DATASET_API}{dataset_id}/metric/{metric_id}")

    # ========================================
    # Requests
    # ========================================

    def get(self, path: str, params: dict | None = None) -> Any:
        """Make GET request."""
        return self.request("GET", path, params=params)

    def post(self, path: str, json_data: dict | None = None) -> Any:
        """Make POST request with JSON body."""
        return self.request("POST", path, json_data)

    def put(self, path: str, json_data: dict | None = None) -> Any:
        """Make PUT request with JSON body."""
        return self.request("PUT", path, json_data)

    def delete(self, path: str) -> Any:
        """Make DELETE request."""
        return self.request("DELETE", path)

    def request(
        self,
        method: str,
        path: str,
        body: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        """
        Send a request with auth headers and the refresh-then-fallback policy.

        Raises:
            CatalogAPIError: The remote catalog answered with status >= 400
                after every applicable auth strategy was tried.
            httpx.HTTPError: Transport failure.
        """
        auth = self.auth.headers_for(method)
        response = self._send(method, path, body, params, auth)

        if response.status_code in AUTH_FAILURE_STATUSES and auth.mode is AuthMode.TOKEN:
            if self.auth.refresh():
                refreshed = self.auth.token_headers(method)
                if refreshed is not None:
                    return self._handle_response(self._send(method, path, body, params, refreshed))
            key_auth = self.auth.key_headers()
            if key_auth is not None:
                logger.warning(
                    "token_auth_rejected_fallback_to_key",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                )
                metrics.AUTH_EVENTS.labels(event="fallback", status="success").inc()
                return self._handle_response(self._send(method, path, body, params, key_auth))

        return self._handle_response(response)

    def _send(
        self,
        method: str,
        path: str,
        body: dict | None,
        params: dict | None,
        auth: AuthHeaders,
    ) -> httpx.Response:
        logger.debug("catalog_request", method=method, path=path, auth_mode=auth.mode.value)
        try:
            response = self.client.request(method, path, json=body, params=params, headers=auth.headers)
        except httpx.HTTPError as e:
            metrics.CATALOG_REQUESTS.labels(method=method, status="error").inc()
            logger.warning("catalog_request_failed", method=method, path=path, error=str(e))
            raise
        metrics.CATALOG_REQUESTS.labels(method=method, status=str(response.status_code)).inc()
        logger.debug("catalog_response", method=method, path=path, status_code=response.status_code)
        return response

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response, raising error if not successful."""
        if response.status_code >= 400:
            message = response.text or f"HTTP {response.status_code}"
            try:
                error_data = response.json()
                if isinstance(error_data, dict):
                    message = str(error_data.get("message", error_data.get("msg", message)))
            except ValueError:
                pass
            raise CatalogAPIError(response.status_code, message, response.text)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"Unparseable response from {response.request.url}") from e

    def _create(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            return self.post(path, payload)
        except CatalogAPIError as e:
            if is_duplicate_resource(e.status_code, e.body):
                raise DuplicateResourceError(e.status_code, e.message, e.body) from e
            raise

    def _list_all(self, path: str) -> list[dict[str, Any]]:
        """
        Collect every page of a list endpoint.

        With a reported ``count`` pages are fetched until that many items
        arrived, whatever size the server gives each page. Without it a
        short page ends the listing. An empty page always does, and so does
        reaching ``MAX_LIST_PAGES``.
        """
        page_size = max(1, self.settings.page_size)
        items: list[dict[str, Any]] = []
        for page in range(MAX_LIST_PAGES):
            response = self.get(path, params={"q": f"(page:{page},page_size:{page_size})"})
            batch = [item for item in resolve_result_list(response) if isinstance(item, dict)]
            items.extend(batch)
            if not batch:
                break
            count = as_int(response.get("count")) if isinstance(response, dict) else None
            if count is not None:
                if len(items) >= count:
                    break
            elif len(batch) < page_size:
                break
        else:
            logger.warning("catalog_list_page_limit_reached", path=path, pages=MAX_LIST_PAGES, items=len(items))
        return items


# ============================================
# Payloads and envelopes
# ============================================


def database_payload(database: RemoteDatabase) -> dict[str, Any]:
    return {"database_name": database.name, "sqlalchemy_uri": database.connection_uri}


def dataset_update_payload(dataset: RemoteDataset) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "database_id": dataset.database_remote_id,
        "schema": dataset.schema_name,
        "table_name": dataset.table_name,
        "sql": dataset.sql,
        "template_params": "{}",
    }
    if dataset.time_column and dataset.time_column.strip():
        payload["main_dttm_col"] = dataset.time_column
    if dataset.columns:
        payload["columns"] = [column.to_payload() for column in dataset.columns]
    if dataset.metrics:
        payload["metrics"] = [metric.to_payload() for metric in dataset.metrics]
    return payload


def resolve_result(response: Any) -> dict[str, Any] | None:
    """Unwrap ``{result: {...}}``, falling back to the response itself."""
    if not isinstance(response, dict):
        return None
    result = response.get("result")
    return result if isinstance(result, dict) else response


def resolve_result_list(response: Any) -> list[Any]:
    """Accept both ``{result: [...]}`` and ``{result: {result: [...]}}``."""
    if not isinstance(response, dict):
        return []
    result = response.get("result")
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and isinstance(result.get("result"), list):
        return result["result"]
    return []


def resolve_created_id(response: Any) -> int | None:
    """Read a created resource id, top-level or under ``result``."""
    if not isinstance(response, dict):
        return None
    remote_id = as_int(response.get("id"))
    if remote_id is None:
        result = response.get("result")
        if isinstance(result, dict):
            remote_id = as_int(result.get("id"))
    return remote_id


def parse_columns(items: Any) -> list[Column]:
    if not isinstance(items, list):
        return []
    columns = []
    for item in items:
        if not isinstance(item, dict):
            continue
        column = Column.from_payload(item)
        if (column.name and column.name.strip()) or column.remote_id is not None:
            columns.append(column)
    return columns


def parse_metrics(items: Any) -> list[Metric]:
    if not isinstance(items, list):
        return []
    parsed = []
    for item in items:
        if not isinstance(item, dict):
            continue
        metric = Metric.from_payload(item)
        if (metric.name and metric.name.strip()) or metric.remote_id is not None:
            parsed.append(metric)
    return parsed


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


def get_client(settings: Settings) -> CatalogClient:
    """Get configured catalog client."""
    return CatalogClient(settings)
