"""Tests for identity resolution of query definitions."""

from catalog_sync.identity import (
    DEFAULT_DATASET_NAME,
    NAME_LIMIT,
    build_columns,
    build_dataset_name,
    build_metrics,
    element_column_name,
    element_label,
    resolve_identity,
)
from catalog_sync.models import DatasetKind, LocalDatabase, QueryDefinition, SchemaElement
from catalog_sync.sql import normalize_sql, sql_fingerprint


def definition(sql: str, **kwargs) -> QueryDefinition:
    return QueryDefinition(sql=sql, **kwargs)


class TestResolveIdentity:
    """Tests for resolve_identity."""

    def test_blank_sql(self) -> None:
        """Blank SQL resolves to nothing."""
        assert resolve_identity(definition("")) is None
        assert resolve_identity(definition("   ")) is None
        assert resolve_identity(QueryDefinition()) is None

    def test_hash_matches_normalized_sql(self) -> None:
        """The fingerprint is taken over the normalized SQL."""
        identity = resolve_identity(definition("select id from orders;"))
        assert identity.normalized_sql == normalize_sql("select id from orders;")
        assert identity.sql_hash == sql_fingerprint(identity.normalized_sql)

    def test_hash_stable_across_formatting(self) -> None:
        """Equivalent SQL gets the same identity hash."""
        first = resolve_identity(definition("SELECT region, SUM(amount) FROM orders GROUP BY region"))
        second = resolve_identity(definition("select region,sum(amount)\nfrom orders\ngroup by region;"))
        assert first.sql_hash == second.sql_hash

    def test_plain_table_read_is_physical(self) -> None:
        """A bare projection of one table is a physical dataset on that table."""
        identity = resolve_identity(definition("select * from sales.orders"))
        assert identity.kind is DatasetKind.PHYSICAL
        assert identity.table_name == "orders"
        assert identity.schema_name == "sales"

    def test_aggregate_query_is_virtual(self) -> None:
        """A virtual dataset uses its own name as table name."""
        identity = resolve_identity(definition("SELECT region, SUM(amount) FROM orders GROUP BY region"))
        assert identity.kind is DatasetKind.VIRTUAL
        assert identity.table_name == identity.name

    def test_join_is_virtual(self) -> None:
        """Two tables never make a physical dataset."""
        identity = resolve_identity(
            definition("SELECT o.id, c.name FROM orders o JOIN customers c ON o.customer_id = c.id")
        )
        assert identity.kind is DatasetKind.VIRTUAL

    def test_unparseable_sql_is_virtual(self) -> None:
        """SQL that cannot be parsed still resolves, as virtual."""
        identity = resolve_identity(definition("not really ((( sql"))
        assert identity is not None
        assert identity.kind is DatasetKind.VIRTUAL
        assert len(identity.sql_hash) == 32

    def test_schema_from_database(self) -> None:
        """Unqualified tables take the database default schema."""
        database = LocalDatabase(id=1, engine="postgresql", url="jdbc:postgresql://h/db")
        identity = resolve_identity(definition("SELECT * FROM orders"), database)
        assert identity.schema_name == "public"

        database = LocalDatabase(id=2, engine="mysql", url="mysql://h/db", schema_name="shop")
        identity = resolve_identity(definition("SELECT * FROM orders"), database)
        assert identity.schema_name == "shop"

    def test_name_description_and_tags(self) -> None:
        """Name, description and tags describe the query."""
        identity = resolve_identity(definition(
            "SELECT region, SUM(amount) AS total_amount FROM orders GROUP BY region",
            source_dataset_id=5,
            dimensions=[SchemaElement(name="region")],
            metrics=[SchemaElement(name="total_amount", biz_name="Total Amount")],
            filter_count=2,
        ))
        short_hash = identity.sql_hash[:6]
        assert identity.name == f"Metrics Total Amount · Dimensions region · {short_hash}"
        assert identity.description == (
            f"Dataset generated from a chat query, SQL hash: {identity.sql_hash}, "
            "metrics: Total Amount, dimensions: region, filters: 2"
        )
        assert identity.tags == [
            "catalog-sync",
            "chat",
            "datasetId:5",
            "virtual",
            f"sqlHash:{identity.sql_hash[:8]}",
        ]

    def test_time_column(self) -> None:
        """The partition time dimension becomes the time column."""
        identity = resolve_identity(definition(
            "SELECT day, COUNT(*) AS visits FROM events GROUP BY day",
            dimensions=[SchemaElement(name="day", is_partition_time=True)],
            metrics=[SchemaElement(name="visits")],
        ))
        assert identity.time_column == "day"
        day = identity.columns[0]
        assert day.is_time_column is True
        assert day.type == "DATE"


class TestNaming:
    """Tests for display names."""

    def test_default_name(self) -> None:
        """Without dimensions or metrics the default name is used."""
        name = build_dataset_name(definition("SELECT 1"), "abcdef123456")
        assert name == f"{DEFAULT_DATASET_NAME} · abcdef"

    def test_labels_limited_to_three(self) -> None:
        metrics = [SchemaElement(name=f"m{i}") for i in range(5)]
        name = build_dataset_name(definition("SELECT 1", metrics=metrics), "abcdef")
        assert name == "Metrics m0, m1, m2 · abcdef"

    def test_name_truncated(self) -> None:
        dimensions = [SchemaElement(name="d" * 200), SchemaElement(name="e" * 200)]
        name = build_dataset_name(definition("SELECT 1", dimensions=dimensions), "abcdef")
        assert len(name) == NAME_LIMIT

    def test_element_names(self) -> None:
        """Columns prefer the display name, labels prefer the business name."""
        element = SchemaElement(name="total", biz_name="Total Amount")
        assert element_column_name(element) == "total"
        assert element_label(element) == "Total Amount"
        assert element_column_name(SchemaElement(biz_name="only_biz")) == "only_biz"
        assert element_label(SchemaElement(name="only_name")) == "only_name"
        assert element_column_name(SchemaElement(name=" ")) is None


class TestSchema:
    """Tests for column and metric lists."""

    def test_columns_deduplicated(self) -> None:
        """Dimensions come first; a metric sharing a name is not repeated."""
        columns = build_columns(definition(
            "SELECT 1",
            dimensions=[SchemaElement(name="region"), SchemaElement(name="REGION")],
            metrics=[SchemaElement(name="amount"), SchemaElement(name="Region")],
        ))
        assert [column.name for column in columns] == ["region", "amount"]
        assert columns[0].groupable is True
        assert columns[0].type == "STRING"
        assert columns[1].groupable is False
        assert columns[1].type == "NUMBER"

    def test_metrics(self) -> None:
        metrics = build_metrics(definition(
            "SELECT 1",
            metrics=[SchemaElement(name="amount", description="Order value"), SchemaElement(name="amount")],
        ))
        assert len(metrics) == 1
        assert metrics[0].name == "amount"
        assert metrics[0].expression == "amount"
        assert metrics[0].metric_type == "SQL"
        assert metrics[0].description == "Order value"
