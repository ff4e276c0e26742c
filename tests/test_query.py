import json
import sqlite3

import pytest

from topsqlmon.model import InstanceItem, MetricName, TSDBResponse
from topsqlmon.query import (
    DefaultQuery,
    PlanSeries,
    QueryError,
    SQLGroup,
    group_by_sql_digest,
    keep_top_k,
    merge_others,
    top_k,
)


def _by_digest(groups):
    return sorted(groups, key=lambda g: g.sql_digest)


SQL_GROUPS = [
    SQLGroup("sql0", value_sum=23),
    SQLGroup("sql1", value_sum=4),
    SQLGroup("sql2", value_sum=54),
    SQLGroup("sql3", value_sum=32),
    SQLGroup("sql4", value_sum=0),
]


def test_keep_top_k_too_large():
    groups, others = keep_top_k(SQL_GROUPS, 20)
    assert groups == SQL_GROUPS
    assert others == []


def test_keep_top_k_too_small():
    groups, others = keep_top_k(SQL_GROUPS, 0)
    assert groups == SQL_GROUPS
    assert others == []


def test_keep_top_1():
    groups, others = keep_top_k(SQL_GROUPS, 1)
    assert _by_digest(groups) == [SQLGroup("sql2", value_sum=54)]
    assert _by_digest(others) == [
        SQLGroup("sql0", value_sum=23),
        SQLGroup("sql1", value_sum=4),
        SQLGroup("sql3", value_sum=32),
        SQLGroup("sql4", value_sum=0),
    ]


def test_keep_top_4():
    groups, others = keep_top_k(SQL_GROUPS, 4)
    assert _by_digest(groups) == [
        SQLGroup("sql0", value_sum=23),
        SQLGroup("sql1", value_sum=4),
        SQLGroup("sql2", value_sum=54),
        SQLGroup("sql3", value_sum=32),
    ]
    assert _by_digest(others) == [SQLGroup("sql4", value_sum=0)]


def _result(sql, plan, values):
    return {
        "metric": {
            "instance": "127.0.0.1:10080",
            "instance_type": "tidb",
            "sql_digest": sql,
            "plan_digest": plan,
        },
        "values": values,
    }


METRICS = [
    _result("sql0", "plan0", [[1.0, "25"], [2.0, "10"], [3.0, "21"], [4.0, "4"], [5.0, "1"]]),
    _result("sql0", "plan1", [[1.0, "8"], [3.0, "81"], [4.0, "68"], [5.0, "21"]]),
    _result("sql1", "plan0", [[1.0, "65"], [2.0, "38"], [3.0, "75"], [5.0, "20"]]),
    _result("sql2", "plan0", [[1.0, "84"], [2.0, "49"], [3.0, "78"], [4.0, "86"]]),
    _result("sql3", "plan0", [[1.0, "81"], [2.0, "2"], [3.0, "21"], [4.0, "93"], [5.0, "9"]]),
    _result("", "", [[1.0, "14"], [2.0, "79"], [3.0, "96"], [4.0, "48"], [5.0, "68"]]),
]

SQL0 = SQLGroup(
    "sql0",
    [
        PlanSeries("plan0", [1, 2, 3, 4, 5], [25, 10, 21, 4, 1]),
        PlanSeries("plan1", [1, 3, 4, 5], [8, 81, 68, 21]),
    ],
    239,
)
SQL1 = SQLGroup("sql1", [PlanSeries("plan0", [1, 2, 3, 5], [65, 38, 75, 20])], 198)
SQL2 = SQLGroup("sql2", [PlanSeries("plan0", [1, 2, 3, 4], [84, 49, 78, 86])], 297)
SQL3 = SQLGroup("sql3", [PlanSeries("plan0", [1, 2, 3, 4, 5], [81, 2, 21, 93, 9])], 206)


def test_top_k_10():
    groups = _by_digest(top_k(METRICS, 10))
    assert groups == [
        SQLGroup("", [PlanSeries("", [1, 2, 3, 4, 5], [14, 79, 96, 48, 68])], 305),
        SQL0,
        SQL1,
        SQL2,
        SQL3,
    ]


def test_top_k_3():
    groups = _by_digest(top_k(METRICS, 3))
    assert groups == [
        SQLGroup("", [PlanSeries("", [1, 2, 3, 4, 5], [79, 117, 171, 48, 88])]),
        SQL0,
        SQL2,
        SQL3,
    ]


def test_top_k_1():
    groups = _by_digest(top_k(METRICS, 1))
    assert groups == [
        SQLGroup("", [PlanSeries("", [1, 2, 3, 4, 5], [193, 129, 294, 213, 119])]),
        SQL2,
    ]


def test_top_k_empty():
    assert top_k([], 10) == []


def test_group_by_sql_digest_skips_bad_points():
    groups, others = group_by_sql_digest(
        [_result("s", "p", [[1.0, "5"], [2.0, "-3"], [3.0, "x"], [4.0], [5, "7"]])]
    )
    assert groups == [SQLGroup("s", [PlanSeries("p", [1, 5], [5, 7])], 12)]
    assert others == SQLGroup()


def test_merge_others_without_query_others_returns_original():
    original = SQLGroup("", [PlanSeries("", [1], [2])], 2)
    assert merge_others(original, []) is original


def test_merge_others_with_no_points_has_one_empty_series():
    merged = merge_others(SQLGroup(), [SQLGroup("x")])
    assert merged == SQLGroup("", [PlanSeries()])


# DefaultQuery with a fake time-series handler


def _payload(result):
    return json.dumps({"status": "success", "data": {"resultType": "matrix", "result": result}}).encode()


class FakeTSDB:
    def __init__(self, range_results=(), sums=None, instances=(), status=200, body=None):
        self.range_results = list(range_results)
        self.sums = sums or {}
        self.instance_results = list(instances)
        self.status = status
        self.body = body
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.status != 200:
            return TSDBResponse(self.status, self.body or b"")
        query = request.params["query"]
        if request.path == "/api/v1/query_range":
            return TSDBResponse(200, _payload(self.range_results))
        if query.startswith("last_over_time"):
            return TSDBResponse(200, _payload(self.instance_results))
        name = query[len("sum_over_time("): query.index("{")]
        return TSDBResponse(200, _payload(self.sums.get(name, [])))


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    conn.execute("CREATE TABLE sql_digest (digest TEXT PRIMARY KEY, sql_text TEXT, is_internal BOOLEAN)")
    conn.execute("CREATE TABLE plan_digest (digest TEXT PRIMARY KEY, plan_text TEXT, encoded_plan TEXT)")
    conn.execute("INSERT INTO sql_digest VALUES ('aa', 'SELECT 1', 0)")
    conn.execute("INSERT INTO plan_digest VALUES ('p1', 'plan text', '')")
    conn.execute("INSERT INTO plan_digest VALUES ('p2', '', 'ENCODED')")
    yield conn
    conn.close()


def _sum(sql, plan, value):
    return {"metric": {"sql_digest": sql, "plan_digest": plan}, "value": [109.0, value]}


def test_records_aligns_start_and_builds_query(db):
    tsdb = FakeTSDB()
    query = DefaultQuery(tsdb, db)
    assert query.records("cpu_time", 3, 20, 10, 5, "host:1", "tidb") == []
    params = tsdb.requests[0].params
    assert params == {
        "query": 'sum_over_time(cpu_time{instance="host:1", instance_type="tidb"}[10])',
        "start": "10",
        "end": "20",
        "step": "10",
        "nocache": "1",
    }
    assert tsdb.requests[0].headers["Accept"] == "application/json"


def test_records_start_after_end_does_not_query(db):
    tsdb = FakeTSDB()
    assert DefaultQuery(tsdb, db).records("cpu_time", 30, 20, 10, 5, "h", "tidb") == []
    assert tsdb.requests == []


def test_records_fill_text_and_series(db):
    tsdb = FakeTSDB(
        range_results=[
            _result("aa", "p1", [[100.0, "3"]]),
            _result("bb", "p2", [[100.0, "4"]]),
        ]
    )
    query = DefaultQuery(tsdb, db, plan_decoder=lambda encoded: encoded.lower())
    items = query.records(MetricName.READ_ROW, 100, 100, 10, 5, "h", "tikv")
    items.sort(key=lambda item: item.sql_digest)
    assert items[0].to_dict() == {
        "sql_digest": "aa",
        "sql_text": "SELECT 1",
        "is_other": False,
        "plans": [{"plan_digest": "p1", "plan_text": "plan text", "timestamp_sec": [100], "read_rows": [3]}],
    }
    assert items[1].sql_text == ""
    assert items[1].plans[0].plan_text == "encoded"
    assert items[1].plans[0].read_rows == [4]
    assert items[1].plans[0].cpu_time_ms == []


def test_records_plan_decoder_failure_leaves_text_empty(db):
    def broken(encoded):
        raise ValueError("bad plan")

    tsdb = FakeTSDB(range_results=[_result("bb", "p2", [[1.0, "4"]])])
    items = DefaultQuery(tsdb, db, plan_decoder=broken).records("cpu_time", 1, 1, 1, 5, "h", "tidb")
    assert items[0].plans[0].plan_text == ""
    assert items[0].plans[0].cpu_time_ms == [4]


def test_error_status_raises_with_body(db):
    tsdb = FakeTSDB(status=500, body=b"boom")
    with pytest.raises(QueryError, match="boom"):
        DefaultQuery(tsdb, db).records("cpu_time", 1, 10, 1, 5, "h", "tidb")


def test_missing_handler_raises(db):
    with pytest.raises(QueryError, match="empty query handler"):
        DefaultQuery(None, db).instances(1, 10)


def test_non_positive_window_raises(db):
    with pytest.raises(QueryError):
        DefaultQuery(FakeTSDB(), db).summary(1, 10, 0, 5, "h", "tidb")


def test_instances(db):
    tsdb = FakeTSDB(
        instances=[
            {"metric": {"__name__": "instance", "instance": "127.0.0.1:10080", "instance_type": "tidb"}},
            {"metric": {"__name__": "instance", "instance": "127.0.0.1:20160", "instance_type": "tikv"}},
        ]
    )
    items = DefaultQuery(tsdb, db).instances(10, 20)
    assert items == [InstanceItem("127.0.0.1:10080", "tidb"), InstanceItem("127.0.0.1:20160", "tikv")]
    assert tsdb.requests[0].params == {
        "query": "last_over_time(instance[11s])",
        "time": "20",
        "nocache": "1",
    }
    assert tsdb.requests[0].path == "/api/v1/query"


def test_instances_start_after_end(db):
    assert DefaultQuery(FakeTSDB(), db).instances(30, 20) == []


def test_summary_with_others(db):
    tsdb = FakeTSDB(
        range_results=[
            _result("aa", "p1", [[109.0, "30"]]),
            _result("bb", "p2", [[109.0, "10"]]),
        ],
        sums={
            "sql_duration_sum": [_sum("aa", "p1", "4000000"), _sum("bb", "p2", "9000000")],
            "sql_duration_count": [_sum("aa", "p1", "2"), _sum("bb", "p2", "3")],
            "sql_exec_count": [_sum("aa", "p1", "20"), _sum("bb", "p2", "5")],
            "read_row": [_sum("aa", "p1", "10"), _sum("bb", "p2", "not a number")],
            "read_index": [_sum("bb", "p2", "30")],
        },
    )
    items = DefaultQuery(tsdb, db).summary(100, 109, 10, 1, "h", "tidb")
    assert [item.sql_digest for item in items] == ["aa", ""]

    top = items[0]
    assert top.sql_text == "SELECT 1"
    assert top.cpu_time_ms == 30
    assert top.duration_per_exec_ms == pytest.approx(2.0)
    assert top.exec_count_per_sec == pytest.approx(2.0)
    assert top.scan_records_per_sec == pytest.approx(1.0)
    assert top.scan_indexes_per_sec == 0.0
    plan = top.plans[0]
    assert (plan.plan_digest, plan.plan_text, plan.timestamp_sec, plan.cpu_time_ms) == ("p1", "plan text", [109], [30])
    assert plan.duration_per_exec_ms == pytest.approx(2.0)

    others = items[1]
    assert others.is_other
    assert others.cpu_time_ms == 10
    assert others.duration_per_exec_ms == pytest.approx(3.0)
    assert others.exec_count_per_sec == pytest.approx(0.5)
    assert others.scan_records_per_sec == 0.0
    assert others.scan_indexes_per_sec == pytest.approx(3.0)
    assert others.plans[0].timestamp_sec == [109]
    assert others.plans[0].cpu_time_ms == [10]
    assert others.plans[0].scan_indexes_per_sec == pytest.approx(3.0)

    sum_queries = [r.params["query"] for r in tsdb.requests if r.path == "/api/v1/query"]
    assert 'sum_over_time(sql_duration_sum{instance="h", instance_type="tidb"}[10s])' in sum_queries
    assert all(r.params["time"] == "109" for r in tsdb.requests if r.path == "/api/v1/query")


def test_summary_zero_duration_count(db):
    tsdb = FakeTSDB(
        range_results=[_result("aa", "p1", [[5.0, "7"]])],
        sums={"sql_duration_sum": [_sum("aa", "p1", "1000000")]},
    )
    items = DefaultQuery(tsdb, db).summary(5, 5, 1, 5, "h", "tidb")
    assert len(items) == 1
    assert items[0].duration_per_exec_ms == 0.0
    assert items[0].plans[0].duration_per_exec_ms == 0.0
    assert items[0].cpu_time_ms == 7


def test_summary_no_data(db):
    tsdb = FakeTSDB()
    assert DefaultQuery(tsdb, db).summary(141, 200, 10, 5, "h", "tidb") == []
    assert len(tsdb.requests) == 1