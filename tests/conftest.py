"""Shared fixtures for the lifecycle_to_trace tests."""

import pytest


def make_line(time: str, component: str, level: str, rest: str, pid: str = "40884") -> str:
    """Build a log line in the layout emitted by the instrumented program."""
    return f"2023-10-09 {time} {pid} {component} {level} {rest}"


def ctor(time: str, component: str, signature: str, level: str = "1") -> str:
    return make_line(time, component, level, f"{signature} constructor")


def dtor(time: str, component: str, signature: str, level: str = "1") -> str:
    return make_line(time, component, level, f"{signature} destructor")


def info(time: str, component: str, text: str, level: str = "1") -> str:
    return make_line(time, component, level, text)


@pytest.fixture
def write_log(tmp_path):
    """Write lines to a log file under tmp_path and return its path."""
    def _write(lines, name="trace.log"):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)
    return _write
