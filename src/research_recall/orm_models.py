from __future__ import annotations

from peewee import CharField, IntegerField, Model, SqliteDatabase, TextField

# New connections inherit pragmatic SQLite settings for consistency and lock behavior.
database = SqliteDatabase(
    None,
    pragmas={
        "journal_mode": "wal",
        "busy_timeout": 5000,
    },
)


class LearningMetricsModel(Model):
    day = CharField(primary_key=True)
    insights_by_type = TextField(default="{}")
    total_insights = IntegerField(default=0)
    recent_insights = TextField(default="[]")
    last_update = TextField(null=True)

    class Meta:
        table_name = "learning_metrics"


class ToolMetricsModel(Model):
    tool_id = CharField(primary_key=True)
    total_uses = IntegerField(default=0)
    successful_uses = IntegerField(default=0)
    recent_feedback = TextField(default="[]")
    updated_at = TextField(null=True)

    class Meta:
        table_name = "tool_metrics"


ALL_MODELS: list[type[Model]] = [LearningMetricsModel, ToolMetricsModel]


def init_metrics_database(db_path: str) -> None:
    database.init(db_path)
    database.bind(ALL_MODELS)
    with database.connection_context():
        database.create_tables(ALL_MODELS, safe=True)
