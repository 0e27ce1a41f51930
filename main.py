#!/usr/bin/env python3
"""DeskPilot — command-line client.

Connects to the FastAPI backend over HTTP/SSE, sends one instruction (or
continues an existing conversation) and renders the event stream.

Usage:
    python main.py "Open the file manager"             # one step, then prompt for more
    python main.py "Open Firefox" --policy run_to_completion
    python main.py "..." --policy fixed --max-iterations 3
    python main.py "..." --backend tool_calling
    python main.py --continue ID                         # next step of a conversation
    python main.py --url http://host:9000                # custom server URL
    python main.py --no-color                            # disable ANSI colors

After each invocation in an interactive terminal, press Enter to run the
next step of the same conversation or type q to quit.
"""

import argparse
import json
import sys

import requests

# ---- ANSI colors ----

_USE_COLOR = True
_VERBOSE = False


def _c(code: str, text: str) -> str:
    if not _USE_COLOR:
        return text
    return f"\033[{code}m{text}\033[0m"


def dim(text: str) -> str:
    return _c("2", text)


def cyan(text: str) -> str:
    return _c("36", text)


def green(text: str) -> str:
    return _c("32", text)


def yellow(text: str) -> str:
    return _c("33", text)


def red(text: str) -> str:
    return _c("31", text)


def bold(text: str) -> str:
    return _c("1", text)


# ---- SSE parsing ----

def iter_sse_events(response: requests.Response):
    """Parse SSE events from a streaming requests response.

    Yields (event_type, data_dict) tuples.
    """
    event_type = "message"
    data_lines = []

    for line in response.iter_lines(decode_unicode=True):
        if line is None:
            continue

        if line == "":
            # Empty line = end of event
            if data_lines:
                raw = "\n".join(data_lines)
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    data = {"raw": raw}
                yield event_type, data
            event_type = "message"
            data_lines = []
            continue

        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())
        # Comments (":" keep-alive pings) and id/retry fields are ignored


# ---- API client ----

class APIError(Exception):
    def __init__(self, status: int, detail: str):
        self.status = status
        super().__init__(f"HTTP {status}: {detail}")


class APIClient:
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self.conversation_id = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    @staticmethod
    def _raise_for_status(resp: requests.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        raise APIError(resp.status_code, str(detail))

    def check_server(self) -> dict:
        resp = requests.get(self._url("/status"), timeout=5)
        self._raise_for_status(resp)
        return resp.json()

    def get_session(self) -> dict:
        resp = requests.get(self._url(f"/sessions/{self.conversation_id}"), timeout=5)
        self._raise_for_status(resp)
        return resp.json()

    def _stream(self, path: str, body: dict):
        resp = requests.post(
            self._url(path),
            json=body,
            stream=True,
            timeout=(10, 600),
            headers={"Accept": "text/event-stream"},
        )
        try:
            self._raise_for_status(resp)
            self.conversation_id = resp.headers.get("x-conversation-id", self.conversation_id)
            for event_type, data in iter_sse_events(resp):
                yield event_type, data
                if event_type in ("session-complete", "error"):
                    break
        finally:
            resp.close()

    def run(self, instruction: str, **options):
        """Start a conversation (fresh-start). Yields SSE events."""
        body = {"instruction": instruction, **_drop_none(options)}
        if self.conversation_id:
            body["conversation_id"] = self.conversation_id
        yield from self._stream("/sessions/run", body)

    def step(self, **options):
        """Continue the current conversation. Yields SSE events."""
        yield from self._stream(f"/sessions/{self.conversation_id}/step", _drop_none(options))


def _drop_none(d: dict) -> dict:
    return {k: v for k, v in d.items() if v is not None}


# ---- Rendering ----

def _describe_action(action: dict) -> str:
    kind = action.get("type", "?")
    details = []
    if "coordinate" in action:
        details.append(f"at {tuple(action['coordinate'])}")
    for key in ("text", "key"):
        if key in action:
            details.append(repr(action[key]))
    if kind == "scroll":
        details.append(f"{action.get('scroll_direction', 'down')} x{action.get('scroll_amount', 1)}")
    if "duration" in action:
        details.append(f"{action['duration']}s")
    if "problem" in action:
        details.append(f"({action['problem']})")
    return " ".join([kind] + details)


def display_event(event_type: str, data: dict) -> None:
    if event_type == "narrative":
        print(f"\n{data.get('text', '')}")
    elif event_type == "action-proposed":
        print(cyan(f"  -> {_describe_action(data.get('action', {}))}"))
    elif event_type == "action-result":
        result = data.get("result", {})
        if result.get("ok", True):
            msg = result.get("output") or ("screenshot captured" if "image" in result else "done")
            suffix = f" ({result['fallback']})" if result.get("fallback") else ""
            print(green(f"     ok: {msg}{suffix}"))
        else:
            print(yellow(f"     failed: {result.get('error', 'unknown error')}"))
    elif event_type == "screenshot":
        if _VERBOSE:
            print(dim(f"  [screenshot, {len(data.get('image', ''))} bytes base64]"))
    elif event_type == "turn-complete":
        failed = data.get("failed", 0)
        extra = f", {failed} failed" if failed else ""
        print(dim(f"  -- turn {data.get('turn')} complete ({data.get('actions', 0)} actions{extra})"))
    elif event_type == "error":
        print(red(f"\nError: {data.get('message', data)}"))
    elif event_type == "session-complete":
        print(dim(
            f"\n  Done ({data.get('reason', 'completed')}): "
            f"{data.get('turn_count', 0)} turns, {data.get('history_length', 0)} history entries"
        ))
    elif _VERBOSE:
        print(dim(f"  [{event_type}] {data}"))


def _consume(events) -> bool:
    """Render an event stream. Returns False if it ended in an error."""
    ok = True
    for event_type, data in events:
        display_event(event_type, data)
        if event_type == "error":
            ok = False
    return ok


def main():
    global _USE_COLOR, _VERBOSE

    parser = argparse.ArgumentParser(description="CLI client for the DeskPilot server")
    parser.add_argument("instruction", nargs="?", default=None, help="Task for a new conversation")
    parser.add_argument("--url", default="http://localhost:8000", help="API server URL (default: http://localhost:8000)")
    parser.add_argument(
        "--backend", choices=["native", "structured", "tool_calling"], default=None,
        help="Decision backend (default: the server's default_backend)",
    )
    parser.add_argument(
        "--policy", choices=["single_step", "fixed", "run_to_completion"], default="single_step",
        help="Iteration policy for each invocation",
    )
    parser.add_argument("--max-iterations", type=int, default=None, help="Iteration count for --policy fixed")
    parser.add_argument("--continue", "-c", dest="conversation_id", default=None, help="Continue conversation ID")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI color output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show screenshots and unknown events")
    args = parser.parse_args()

    if args.no_color:
        _USE_COLOR = False
    _VERBOSE = args.verbose

    if not args.instruction and not args.conversation_id:
        parser.error("an instruction or --continue ID is required")

    client = APIClient(args.url)
    try:
        status = client.check_server()
    except (requests.RequestException, APIError) as e:
        print(red(f"Cannot reach server at {args.url}: {e}"))
        sys.exit(1)
    if _VERBOSE:
        print(dim(f"  Server up {status.get('uptime_seconds', 0)}s, default backend {status.get('default_backend')}"))

    options = {"backend": args.backend, "iteration_policy": args.policy, "max_iterations": args.max_iterations}
    client.conversation_id = args.conversation_id

    try:
        if args.conversation_id:
            ok = _consume(client.step(**options))
        else:
            print(bold(f"> {args.instruction}"))
            ok = _consume(client.run(args.instruction, **options))
        print(dim(f"  Conversation: {client.conversation_id}"))

        while sys.stdin.isatty():
            try:
                answer = input(dim("[Enter] next step, q to quit: ")).strip().lower()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if answer in ("q", "quit", "exit"):
                break
            ok = _consume(client.step(**options))
    except APIError as e:
        print(red(str(e)))
        sys.exit(1)
    except requests.RequestException as e:
        print(red(f"Connection error: {e}"))
        sys.exit(1)
    except KeyboardInterrupt:
        print(dim("\n  Interrupted. The server keeps running the current step."))
        sys.exit(130)

    sys.exit(0 if ok else 2)


if __name__ == "__main__":
    main()
