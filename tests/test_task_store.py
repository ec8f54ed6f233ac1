from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from ralph_loop.state import TaskIndexOutOfRangeError, TaskStore, ValidationError
from ralph_loop.state.models import Task, TaskStatus
from ralph_loop.state.tasks import DOCUMENT_HEADER, parse_tasks, serialize_tasks

pytestmark = [
    allure.epic("Ralph Loop"),
    allure.feature("Task Store"),
]

_MALFORMED_DOCUMENT = """
# Ralph Tasks

Invalid line without proper format
- [missing bracket
- [] missing space
- [x]Valid task
- [ ] Task with weird spacing
- [x] Another valid task
  - Subtask without proper format
  - [ ] Valid subtask
"""

_NESTED_DOCUMENT = """
# Ralph Tasks

- [ ] Task to keep 1
- [x] Task to remove
  - [ ] Subtask that should be removed
  - [x] Another subtask to remove
- [ ] Task to keep 2
"""


def _store(tmp_path: Path, content: str | None = None) -> TaskStore:
    path = tmp_path / ".opencode" / "ralph-tasks.md"
    if content is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return TaskStore(path, lock_timeout_seconds=5)


def test_parse_keeps_only_well_formed_tasks() -> None:
    tasks = parse_tasks(_MALFORMED_DOCUMENT)

    assert [(task.index, task.description, task.status, task.depth) for task in tasks] == [
        (1, "Valid task", TaskStatus.DONE, 0),
        (2, "Task with weird spacing", TaskStatus.TODO, 0),
        (3, "Another valid task", TaskStatus.DONE, 0),
        (4, "Valid subtask", TaskStatus.TODO, 1),
    ]


def test_parse_empty_and_prose_only_documents_have_no_tasks() -> None:
    assert parse_tasks("") == []
    assert parse_tasks("# Ralph Tasks\n## Project Goals\nThis is just a comment\n") == []


def test_parse_tolerates_duplicate_in_progress_tasks() -> None:
    tasks = parse_tasks("- [/] X\n- [/] Y\n")

    assert [task.status for task in tasks] == [TaskStatus.IN_PROGRESS, TaskStatus.IN_PROGRESS]


def test_parse_accepts_uppercase_done_marker() -> None:
    assert parse_tasks("- [X] Shout\n")[0].status == TaskStatus.DONE


def test_serialize_round_trips_valid_tasks() -> None:
    tasks = [
        Task(index=1, description="Parent task 1"),
        Task(index=2, description="Child task 1.1", status=TaskStatus.IN_PROGRESS, depth=1),
        Task(index=3, description="Grandchild task 1.1.1", depth=2),
        Task(index=4, description="Completed parent task", status=TaskStatus.DONE),
        Task(index=5, description="Task with emojis 🚀 and naïve café", depth=1),
    ]

    text = serialize_tasks(tasks)

    assert text.splitlines()[2] == "    - [ ] Grandchild task 1.1.1"
    assert parse_tasks(text) == tasks


def test_add_list_remove_renumbers_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)

    added = [store.add_task(name) for name in ("A", "B", "C")]
    assert [task.index for task in added] == [1, 2, 3]
    assert all(task.status == TaskStatus.TODO for task in store.list_tasks())

    removed = store.remove_task(2)

    assert removed.description == "B"
    assert [(task.index, task.description) for task in store.list_tasks()] == [(1, "A"), (2, "C")]


def test_first_add_creates_state_dir_and_header(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.add_task("First")

    assert store.path.read_text(encoding="utf-8") == DOCUMENT_HEADER + "- [ ] First\n"


def test_add_separates_task_from_trailing_prose(tmp_path: Path) -> None:
    store = _store(tmp_path, "# Ralph Tasks\nSome notes\n")

    store.add_task("New task")

    assert store.path.read_text(encoding="utf-8") == "# Ralph Tasks\nSome notes\n\n- [ ] New task\n"


def test_add_rejects_blank_description(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError, match="must not be empty"):
        store.add_task("   \n ")
    assert not store.exists()


def test_add_flattens_multiline_description(tmp_path: Path) -> None:
    store = _store(tmp_path)

    task = store.add_task("first line\n  second line")

    assert task.description == "first line second line"


def test_remove_drops_whole_subtree_and_keeps_headers(tmp_path: Path) -> None:
    store = _store(tmp_path, _NESTED_DOCUMENT)

    removed = store.remove_task(2)

    content = store.path.read_text(encoding="utf-8")
    assert removed.description == "Task to remove"
    assert "# Ralph Tasks" in content
    assert "Task to keep 1" in content
    assert "Task to keep 2" in content
    assert "Task to remove" not in content
    assert "Subtask that should be removed" not in content
    assert "Another subtask to remove" not in content
    assert [task.description for task in store.list_tasks()] == ["Task to keep 1", "Task to keep 2"]


def test_remove_subtask_keeps_parent_and_siblings(tmp_path: Path) -> None:
    store = _store(tmp_path, _NESTED_DOCUMENT)

    store.remove_task(3)

    assert [(task.description, task.depth) for task in store.list_tasks()] == [
        ("Task to keep 1", 0),
        ("Task to remove", 0),
        ("Another subtask to remove", 1),
        ("Task to keep 2", 0),
    ]


@pytest.mark.parametrize("index", [0, -1, 2, 5])
def test_remove_out_of_range_does_not_mutate(tmp_path: Path, index: int) -> None:
    store = _store(tmp_path, "# Ralph Tasks\n\n- [ ] Only one task\n")
    before = store.path.read_bytes()

    with pytest.raises(TaskIndexOutOfRangeError, match="out of range"):
        store.remove_task(index)

    assert store.path.read_bytes() == before


def test_remove_from_missing_store_reports_no_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(TaskIndexOutOfRangeError, match=r"out of range \(no tasks\)"):
        store.remove_task(1)
    assert not store.exists()


def test_mark_in_progress_leaves_other_tasks_alone(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        "# Ralph Tasks\n\n- [/] Already in progress\n- [ ] Task to mark\n- [ ] Another\n",
    )

    store.mark_in_progress(2)

    assert [task.status for task in store.list_tasks()] == [
        TaskStatus.IN_PROGRESS,
        TaskStatus.IN_PROGRESS,
        TaskStatus.TODO,
    ]


def test_mark_done_rewrites_only_the_marker(tmp_path: Path) -> None:
    store = _store(tmp_path, "# Ralph Tasks\n\n  - [/] Nested work\n")

    store.mark_done(1)

    assert store.path.read_text(encoding="utf-8") == "# Ralph Tasks\n\n  - [x] Nested work\n"


def test_concurrent_adds_lose_no_updates(tmp_path: Path) -> None:
    path = tmp_path / ".opencode" / "ralph-tasks.md"
    errors: list[Exception] = []

    def _add(number: int) -> None:
        try:
            TaskStore(path, lock_timeout_seconds=30).add_task(f"Concurrent task {number}")
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_add, args=(number,)) for number in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    tasks = TaskStore(path).list_tasks()
    assert sorted(task.description for task in tasks) == sorted(
        f"Concurrent task {number}" for number in range(10)
    )
    assert [task.index for task in tasks] == list(range(1, 11))
