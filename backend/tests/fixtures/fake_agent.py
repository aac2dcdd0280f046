"""Stand-in for the agent CLI used by the supervisor tests.

Reads the prompt from stdin and emits newline-delimited JSON shaped like the
real agent's ``stream-json`` output. ``FAKE_AGENT_SCENARIO`` picks the
behavior.
"""

import json
import os
import signal
import sys
import time


def emit(payload: dict) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def text_delta(text: str) -> dict:
    return {
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    }


def result(text: str) -> dict:
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": text,
        "usage": {"input_tokens": 3, "output_tokens": 2},
    }


def main() -> int:
    if "--version" in sys.argv:
        print("1.0.0 (Fake Agent)")
        return 0

    scenario = os.environ.get("FAKE_AGENT_SCENARIO", "echo")
    prompt = sys.stdin.read()

    if scenario == "echo":
        emit({"type": "system", "subtype": "init", "argv": sys.argv[1:]})
        emit(text_delta(f"echo: {prompt}"))
        emit({"type": "assistant", "message": {"model": "fake-model-1", "content": []}})
        emit(result(f"echo: {prompt}"))
        return 0

    if scenario == "split":
        line = json.dumps(text_delta("héllo wörld")) + "\n"
        data = line.encode()
        for i in range(0, len(data), 7):
            sys.stdout.buffer.write(data[i:i + 7])
            sys.stdout.buffer.flush()
            time.sleep(0.005)
        emit(result("héllo wörld"))
        return 0

    if scenario == "noisy":
        print("not json at all", flush=True)
        print("warning: something", file=sys.stderr, flush=True)
        emit(result("ok"))
        sys.stdout.write(json.dumps(result("trailing")))
        sys.stdout.flush()
        return 0

    if scenario == "crash":
        emit(text_delta("partial"))
        return 3

    if scenario == "malformed":
        emit({"type": "assistant", "message": "oops"})
        emit({"type": "stream_event", "event": "content_block_delta"})
        emit(result("still here"))
        return 0

    if scenario == "long_stderr":
        sys.stderr.write("x" * 200_000 + "\n")
        sys.stderr.flush()
        emit(result("after stderr"))
        return 0

    if scenario == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit({"type": "system", "subtype": "init"})
        time.sleep(60)
        return 0

    if scenario == "hang":
        time.sleep(60)
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
