import json
import stat
import sys
from pathlib import Path

import pytest

from claude_gateway.openai_compat import CliInput

# Stand-in for `claude -p --output-format stream-json`. Behaviour is picked with
# FAKE_CLAUDE_MODE; argv and stdin are recorded to FAKE_CLAUDE_RECORD when set.
_FAKE_CLAUDE = """\
import json
import os
import sys
import time

prompt = sys.stdin.read()
mode = os.environ.get("FAKE_CLAUDE_MODE", "ok")
record = os.environ.get("FAKE_CLAUDE_RECORD")
if record:
    with open(record, "w", encoding="utf-8") as f:
        json.dump({"argv": sys.argv[1:], "stdin": prompt}, f)


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()


emit({"type": "system", "subtype": "init", "session_id": "sess-1", "model": "claude-test"})

if mode == "hang":
    time.sleep(60)
if mode == "fail_early":
    sys.stderr.write("API Error: 429 rate limited\\n")
    sys.exit(1)

reply = "echo: " + prompt
half = len(reply) // 2
if mode != "no_partial":
    for piece in (reply[:half], reply[half:]):
        emit({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": piece}},
        })
emit({"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": reply}]}})

if mode == "fail_late":
    sys.stderr.write("claude crashed\\n")
    sys.exit(2)

emit({
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "result": reply,
    "session_id": "sess-1",
    "usage": {"input_tokens": 3, "cache_read_input_tokens": 2, "output_tokens": 5},
})
"""


@pytest.fixture
def fake_claude(tmp_path: Path) -> str:
    path = tmp_path / "claude"
    path.write_text(f"#!{sys.executable}\n{_FAKE_CLAUDE}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def claude_record(tmp_path: Path, monkeypatch):
    """Returns a loader for the argv/stdin the fake CLI saw."""
    record = tmp_path / "record.json"
    monkeypatch.setenv("FAKE_CLAUDE_RECORD", str(record))

    def _load() -> dict:
        return json.loads(record.read_text(encoding="utf-8"))

    return _load


@pytest.fixture
def invocation() -> CliInput:
    return CliInput(prompt="hello there", model="sonnet", system_prompt="Be terse", session_id=None)
