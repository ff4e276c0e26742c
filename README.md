# topsqlmon

`topsqlmon` stores and queries per-statement resource usage ("Top SQL")
reported by the SQL and storage nodes of a distributed database cluster. It
turns incoming records into time-series metrics, keeps the SQL and plan texts
that belong to each digest in a SQLite database, and answers questions about
which statements use the most resources.

It uses only the Python standard library and needs Python 3.10 or newer.

## Modules

- `topsqlmon.model` holds the shared data types. `MetricName` lists the
  metric names (`instance`, `cpu_time`, `read_row`, `read_index`,
  `write_row`, `write_index`, `sql_exec_count`, `sql_duration_sum`,
  `sql_duration_count`). `RecordItem`, `RecordPlanItem`, `SummaryItem`,
  `SummaryPlanItem` and `InstanceItem` are query results; each has a
  `to_dict()` giving its JSON shape (empty value series are left out).
  `Metric` is one series in the import format. `TopologyInstance` is an
  instance seen at a given second. `TSDBRequest` and `TSDBResponse` describe a
  call to the time-series database and its reply; `TSDBResponse.ok()` is true
  for a 2xx status.
- `topsqlmon.codec` reads and writes the resource group tag that storage
  nodes attach to their records: `decode_resource_group_tag` and
  `encode_resource_group_tag` convert between bytes and a `ResourceGroupTag`,
  whose `label` is a `TagLabel` (`ROW` or `INDEX`). Malformed input raises
  `DecodeError`.
- `topsqlmon.store` turns records (`TopSQLRecord`, `ResourceUsageRecord`,
  `SQLMeta`, `PlanMeta`) into metrics. `DefaultStore(insert_handler, db)`
  sends series as newline-delimited JSON to `insert_handler` as a `POST` to
  `/api/v1/import`, and writes digest texts into the `sql_digest` and
  `plan_digest` tables of the given `sqlite3` connection, creating them if
  needed. A failed import is logged, not raised. After `close()` every write
  raises `RuntimeError`. The conversions are also plain functions:
  `instances_to_metrics`, `topsql_record_to_metrics`,
  `resource_metering_record_to_metrics` and `encode_metrics`.
- `topsqlmon.query` reads the data back. `DefaultQuery(select_handler, db,
  plan_decoder=None)` offers `records`, `summary` and `instances`. `top_k`
  keeps the heaviest SQL digests and merges the rest, together with evicted
  points, into one "others" series; `group_by_sql_digest`, `keep_top_k` and
  `merge_others` are its steps. A failed or malformed answer from the
  time-series database, a window that is not positive, or a query after
  `close()` raises `QueryError`.
- `topsqlmon.service` is the request layer. `Service(query)` routes paths to
  the query backend; `Service.routes()` lists them and
  `Service.handle(path, params)` returns `(status, body)`. Parameters are read
  by `parse_start_end` and `parse_all_params`, which raise `ParamError`;
  window lengths such as `1m`, `30s` or `1h30m` are read by `parse_duration`.
- `topsqlmon.subscriber` follows the cluster topology. `SubscriberController`
  takes `Component` lists through `update_topology` and the on/off switch
  through `update_pd_variable`. While enabled, each topology update stores the
  SQL (`tidb`, at its status port) and storage (`tikv`, at its port) instances
  it holds; other components are ignored.
- `topsqlmon.topsql` wires the parts together. `TopSQL(insert_handler,
  select_handler, db)` builds the store, query, controller and service;
  `TopSQL.handle` answers requests and `TopSQL.stop` closes the query and the
  store. It can be used as a context manager.

## Request paths

`Service.handle` answers:

- `/v1/instances`
- `/v1/summary`
- `/v1/<metric>`, for `cpu_time`, `read_row`, `read_index`, `write_row`,
  `write_index`, `sql_exec_count`, `sql_duration_sum` or `sql_duration_count`

All paths accept `start` and `end` in Unix seconds; the default range is the
last two weeks up to now. The summary and metric paths also require
`instance` and `instance_type`, and accept:

- `top`: how many SQL digests to keep; the default `-1` keeps all of them.
- `window`: the aggregation step; the default is `1m`.

A successful answer is `(200, {"status": "ok", "data": [...]})`. A failure is
`{"status": "error", "message": "..."}` with status 400 for bad parameters,
503 when the query backend fails, and 404 for an unknown path.

## What it does not do

- It does not connect to cluster nodes or subscribe to their record streams;
  records must be handed to `DefaultStore` by the caller.
- It contains no time-series database. Reads and writes go through the
  `insert_handler` and `select_handler` callables you supply, which receive a
  `TSDBRequest` and must return a `TSDBResponse`.
- It runs no HTTP server; `Service.handle` returns a status and a JSON-ready
  body for you to serve.
- It cannot decode encoded plans by itself. Without a `plan_decoder`, a plan
  stored only in encoded form is returned with empty text.