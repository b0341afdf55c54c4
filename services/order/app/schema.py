"""
Order Service — テーブル定義

SQL は text() で書くが、テーブル自体は SQLAlchemy Core で宣言しておき
起動時 (とテスト) に create_all する。
"""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

# text() のパラメータ・結果列に型を付けるときに使う
TIMESTAMP = DateTime(timezone=True)

# イベントストア: (aggregate_id, version) の UNIQUE 制約が楽観的ロックになる
event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False, index=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_aggregate_version"),
)

orders_read_model = Table(
    "orders_read_model",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("buyer_id", String(200), nullable=False, index=True),
    Column("buyer_name", String(200), nullable=False),
    Column("street", String(200), nullable=False),
    Column("city", String(100), nullable=False),
    Column("state", String(100), nullable=False),
    Column("country", String(100), nullable=False),
    Column("zip_code", String(20), nullable=False),
    Column("payment_method", String(100), nullable=False),
    Column("items", Text, nullable=False),
    Column("total", Float, nullable=False),
    Column("status", String(30), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("payment_provider_order_id", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# 冪等コマンド: request_id の主キー制約が同時重複リクエストの排他になる
idempotency_requests = Table(
    "idempotency_requests",
    metadata,
    Column("request_id", String(36), primary_key=True),
    Column("command_type", String(100), nullable=False),
    Column("result", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# トランザクショナル・アウトボックス
integration_event_log = Table(
    "integration_event_log",
    metadata,
    Column("event_id", String(36), primary_key=True),
    Column("event_type", String(100), nullable=False),
    Column("content", Text, nullable=False),
    Column("state", String(20), nullable=False, index=True),
    Column("times_sent", Integer, nullable=False, default=0),
    Column("claimed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
