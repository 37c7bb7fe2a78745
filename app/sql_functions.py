"""
Dialect-portable SQL constructs for local-calendar bucketing.

Timestamps are stored as naive UTC. Every report buckets them into the
dashboard's local calendar, a fixed UTC offset taken from settings. These
constructs take the offset as an argument and compile to PostgreSQL interval
arithmetic, or to SQLite date modifiers for the test database.

    local_date(Message.created_at, 330)        -> DATE in local time
    local_hour(Message.created_at, 330)        -> 0..23 in local time
    local_day_number(Message.created_at, 330)  -> days since 1970-01-01, local
    epoch_seconds(Message.created_at)          -> seconds since the epoch
"""

from sqlalchemy import Date, Float, Integer, literal_column
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement


class _LocalTimeFunction(FunctionElement):
    inherit_cache = True

    def __init__(self, column, offset_minutes: int):
        # The offset travels as a literal clause so it is part of the cache key
        super().__init__(column, literal_column(str(int(offset_minutes))))


def _operands(element, compiler, **kw):
    column, offset = element.clauses.clauses
    return compiler.process(column, **kw), int(offset.name)


def _pg_shifted(column_sql: str, offset: int) -> str:
    return f"({column_sql} + INTERVAL '{offset} minutes')"


def _sqlite_modifier(offset: int) -> str:
    return f"'{offset:+d} minutes'"


class local_date(_LocalTimeFunction):
    type = Date()
    name = "local_date"
    inherit_cache = True


class local_hour(_LocalTimeFunction):
    type = Integer()
    name = "local_hour"
    inherit_cache = True


class local_day_number(_LocalTimeFunction):
    """Whole local days since 1970-01-01; differences give day gaps."""

    type = Integer()
    name = "local_day_number"
    inherit_cache = True


class epoch_seconds(FunctionElement):
    type = Float()
    name = "epoch_seconds"
    inherit_cache = True


@compiles(local_date)
def _local_date_default(element, compiler, **kw):
    column, offset = _operands(element, compiler, **kw)
    return f"CAST({_pg_shifted(column, offset)} AS DATE)"


@compiles(local_date, "sqlite")
def _local_date_sqlite(element, compiler, **kw):
    column, offset = _operands(element, compiler, **kw)
    return f"date({column}, {_sqlite_modifier(offset)})"


@compiles(local_hour)
def _local_hour_default(element, compiler, **kw):
    column, offset = _operands(element, compiler, **kw)
    return f"CAST(EXTRACT(HOUR FROM {_pg_shifted(column, offset)}) AS INTEGER)"


@compiles(local_hour, "sqlite")
def _local_hour_sqlite(element, compiler, **kw):
    column, offset = _operands(element, compiler, **kw)
    return f"CAST(strftime('%H', {column}, {_sqlite_modifier(offset)}) AS INTEGER)"


@compiles(local_day_number)
def _local_day_number_default(element, compiler, **kw):
    column, offset = _operands(element, compiler, **kw)
    return f"(CAST({_pg_shifted(column, offset)} AS DATE) - DATE '1970-01-01')"


@compiles(local_day_number, "sqlite")
def _local_day_number_sqlite(element, compiler, **kw):
    column, offset = _operands(element, compiler, **kw)
    # julianday() of a bare date lands on .5, so the difference is whole
    return f"CAST(julianday(date({column}, {_sqlite_modifier(offset)})) - 2440587.5 AS INTEGER)"


@compiles(epoch_seconds)
def _epoch_seconds_default(element, compiler, **kw):
    return f"EXTRACT(EPOCH FROM {compiler.process(element.clauses, **kw)})"


@compiles(epoch_seconds, "sqlite")
def _epoch_seconds_sqlite(element, compiler, **kw):
    return f"((julianday({compiler.process(element.clauses, **kw)}) - 2440587.5) * 86400.0)"
