import os
from datetime import datetime, timedelta

from scheduler_bot.core import ExecutionRecord, TaskLogStore
from scheduler_bot.core.task_log import sanitize_filename


def _record(name="早安", success=True, when=None, **kwargs) -> ExecutionRecord:
    data = dict(
        task_name=name,
        task_type="SEND_MESSAGE",
        target_type="GROUP",
        target_ids=[100],
        success=success,
        details="发送群消息到 100",
    )
    if when is not None:
        data["execution_time"] = when
    data.update(kwargs)
    return ExecutionRecord(**data)


def test_append_writes_one_json_file_per_execution(tmp_path):
    store = TaskLogStore(tmp_path / "tasks")
    record = _record()

    path = store.append(record)

    assert path == tmp_path / "tasks" / "早安" / f"{record.id}.json"
    assert ExecutionRecord.model_validate_json(path.read_text(encoding="utf-8")) == record


def test_oldest_files_are_evicted_beyond_cap(tmp_path):
    store = TaskLogStore(tmp_path, max_per_task=3)
    paths = [store.append(_record()) for _ in range(3)]
    for i, path in enumerate(paths):
        os.utime(path, (1_000_000 + i, 1_000_000 + i))

    newest = store.append(_record())

    assert not paths[0].exists()
    assert all(p.exists() for p in paths[1:])
    assert newest.exists()
    assert len(store.task_logs("早安")) == 3


def test_task_logs_newest_first(tmp_path):
    store = TaskLogStore(tmp_path)
    base = datetime(2026, 3, 1, 8, 0, 0)
    for i in range(3):
        store.append(_record(when=base + timedelta(hours=i), details=f"第{i}次"))

    records = store.task_logs("早安")

    assert [r.details for r in records] == ["第2次", "第1次", "第0次"]


def test_recent_across_tasks(tmp_path):
    store = TaskLogStore(tmp_path)
    base = datetime(2026, 3, 1, 8, 0, 0)
    store.append(_record("a", when=base))
    store.append(_record("b", when=base + timedelta(minutes=2)))
    store.append(_record("c", when=base + timedelta(minutes=1)))

    assert [r.task_name for r in store.recent(2)] == ["b", "c"]


def test_missing_task_has_no_logs(tmp_path):
    store = TaskLogStore(tmp_path / "nothing")
    assert store.task_logs("x") == []
    assert store.recent() == []


def test_unreadable_file_is_skipped(tmp_path):
    store = TaskLogStore(tmp_path)
    store.append(_record())
    (tmp_path / "早安" / "broken.json").write_text("{not json", encoding="utf-8")

    assert len(store.task_logs("早安")) == 1


def test_export(tmp_path):
    store = TaskLogStore(tmp_path / "tasks", export_dir=tmp_path / "exports")
    base = datetime(2026, 3, 1, 8, 0, 0)
    store.append(_record(when=base))
    store.append(_record(when=base + timedelta(hours=1), success=False,
                         error_message="NotConnectedError: offline"))

    path = store.export("早安", limit=1)

    text = path.read_text(encoding="utf-8")
    assert path.parent == tmp_path / "exports"
    assert text.startswith("任务执行日志: 早安")
    assert "结果: 失败" in text
    assert "错误: NotConnectedError: offline" in text
    assert "结果: 成功" not in text


def test_export_without_records(tmp_path):
    store = TaskLogStore(tmp_path / "tasks", export_dir=tmp_path / "exports")
    assert store.export("none") is None


def test_unsafe_task_names_are_sanitized(tmp_path):
    assert sanitize_filename('a/b:c*?"<>|') == "a_b_c______"
    store = TaskLogStore(tmp_path)
    path = store.append(_record("备份/每日"))
    assert path.parent.name == "备份_每日"
    assert store.task_logs("备份/每日")[0].task_name == "备份/每日"


def test_summary_includes_error_for_failures():
    text = _record(success=False, error_message="boom").summary()
    assert "失败" in text
    assert "错误: boom" in text
