"""
任务执行记录

每次执行写入一个 JSON 文件: <root>/<任务名>/<记录ID>.json
每个任务最多保留 max_per_task 个文件，超出部分按修改时间从旧到新删除。
"""

import logging
import re
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("scheduler-bot")

_UNSAFE_FILENAME_RE = re.compile(r'[\\/:*?"<>|]')

_TIME_FMT = "%Y-%m-%d %H:%M:%S"


def new_record_id() -> str:
    return uuid.uuid4().hex


class ExecutionRecord(BaseModel):
    id: str = Field(default_factory=new_record_id)
    task_name: str
    task_type: str
    execution_time: datetime = Field(default_factory=datetime.now)
    target_type: str
    target_ids: list[int] = Field(default_factory=list)
    member_ids: list[int] = Field(default_factory=list)
    success: bool = False
    details: str = ""
    error_message: Optional[str] = None

    def summary(self) -> str:
        status = "成功" if self.success else "失败"
        targets = ",".join(str(t) for t in self.target_ids)
        lines = [
            f"{self.execution_time.strftime(_TIME_FMT)} | {self.task_name} | {status}",
            f"  类型: {self.task_type}, 目标: {self.target_type} {targets}",
            f"  详情: {self.details}",
        ]
        if not self.success and self.error_message:
            lines.append(f"  错误: {self.error_message}")
        return "\n".join(lines)


def sanitize_filename(name: str) -> str:
    return _UNSAFE_FILENAME_RE.sub("_", name)


class TaskLogStore:
    """执行记录的读写、数量上限与导出"""

    def __init__(self, root: str | Path = "logs/tasks", *, max_per_task: int = 100,
                 export_dir: str | Path = "exports"):
        self.root = Path(root)
        self.max_per_task = max_per_task
        self.export_dir = Path(export_dir)
        self._lock = threading.Lock()

    def _task_dir(self, task_name: str) -> Path:
        return self.root / sanitize_filename(task_name)

    def append(self, record: ExecutionRecord) -> Optional[Path]:
        """写入一条记录并清理超出上限的旧记录，写入失败只记日志"""
        task_dir = self._task_dir(record.task_name)
        path = task_dir / f"{record.id}.json"
        try:
            with self._lock:
                task_dir.mkdir(parents=True, exist_ok=True)
                path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
                self._cleanup(task_dir)
        except OSError:
            logger.exception("记录任务执行日志失败: %s", path)
            return None
        logger.debug("已记录任务执行日志: %s", path)
        return path

    def _cleanup(self, task_dir: Path):
        files = sorted(task_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        for old in files[self.max_per_task:]:
            try:
                old.unlink()
            except OSError:
                logger.warning("无法删除旧日志文件: %s", old)

    def _read_dir(self, task_dir: Path) -> list[ExecutionRecord]:
        records = []
        for file in task_dir.glob("*.json"):
            try:
                records.append(ExecutionRecord.model_validate_json(file.read_text(encoding="utf-8")))
            except (OSError, ValidationError):
                logger.error("读取任务日志失败: %s", file.name)
        return records

    def task_logs(self, task_name: str) -> list[ExecutionRecord]:
        """指定任务的全部记录，按执行时间倒序"""
        task_dir = self._task_dir(task_name)
        if not task_dir.is_dir():
            return []
        records = self._read_dir(task_dir)
        records.sort(key=lambda r: r.execution_time, reverse=True)
        return records

    def recent(self, limit: int = 10) -> list[ExecutionRecord]:
        """所有任务中最近的记录"""
        if not self.root.is_dir():
            return []
        records: list[ExecutionRecord] = []
        for task_dir in self.root.iterdir():
            if task_dir.is_dir():
                records.extend(self._read_dir(task_dir))
        records.sort(key=lambda r: r.execution_time, reverse=True)
        return records[:limit]

    def export(self, task_name: str, limit: int = 0) -> Optional[Path]:
        """导出为纯文本文件，没有记录时返回 None"""
        records = self.task_logs(task_name)
        if not records:
            return None
        if limit > 0:
            records = records[:limit]

        now = datetime.now()
        lines = [
            f"任务执行日志: {task_name}",
            f"导出时间: {now.strftime(_TIME_FMT)}",
            "=" * 50,
            "",
        ]
        for r in records:
            lines.append(f"ID: {r.id}")
            lines.append(f"执行时间: {r.execution_time.strftime(_TIME_FMT)}")
            lines.append(f"任务类型: {r.task_type}")
            lines.append(f"目标: {r.target_type} {','.join(str(t) for t in r.target_ids)}")
            lines.append(f"结果: {'成功' if r.success else '失败'}")
            lines.append(f"详情: {r.details}")
            if not r.success and r.error_message:
                lines.append(f"错误: {r.error_message}")
            lines.append("-" * 50)
            lines.append("")

        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / f"{sanitize_filename(task_name)}_{now.strftime('%Y%m%d_%H%M%S')}.txt"
        path.write_text("\n".join(lines), encoding="utf-8")
        logger.info("任务日志已导出到文件: %s", path)
        return path
