"""
Command-line webhook trigger for CI pipelines.

Queues one operation through a webhook, streams its output to stdout and
exits with a code describing the outcome.
Run via: berth-webhook --webhook-id 1 --api-key wh_... --server-id 1 \\
    --stack web --command up --options=-d --berth-url https://berth.example.com

Exit codes:
  0 success            4 validation error
  1 operation failed   5 network error
  2 auth failed        6 timeout
  3 permission denied  7 internal error or missing flag

Progress goes to stderr; operation output goes to stdout.
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

EXIT_SUCCESS = 0
EXIT_OPERATION_FAILED = 1
EXIT_AUTH_FAILED = 2
EXIT_PERMISSION_DENIED = 3
EXIT_VALIDATION_ERROR = 4
EXIT_NETWORK_ERROR = 5
EXIT_TIMEOUT = 6
EXIT_INTERNAL_ERROR = 7

DEFAULT_TIMEOUT_MINUTES = 35


class WebhookCLIError(Exception):
    """Failure carrying the process exit code it maps to."""

    def __init__(self, message: str, exit_code: int):
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


def exit_code_for_status(status_code: int) -> int:
    if status_code == 401:
        return EXIT_AUTH_FAILED
    if status_code == 403:
        return EXIT_PERMISSION_DENIED
    if status_code in (400, 404, 422):
        return EXIT_VALIDATION_ERROR
    if status_code == 408:
        return EXIT_TIMEOUT
    return EXIT_INTERNAL_ERROR


@dataclass
class TriggerConfig:
    webhook_id: int
    api_key: str
    server_id: int
    stack_name: str
    command: str
    berth_url: str
    options: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    insecure: bool = False
    verbose: bool = False
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if detail:
            return detail if isinstance(detail, str) else json.dumps(detail)
    return f"HTTP {response.status_code}"


class WebhookClient:
    def __init__(self, config: TriggerConfig, client: httpx.Client | None = None):
        self.config = config
        self.base_url = config.berth_url.rstrip("/")
        self.client = client or httpx.Client(
            verify=not config.insecure,
            timeout=httpx.Timeout(config.timeout_minutes * 60.0, connect=30.0),
        )

    def _log(self, message: str) -> None:
        if self.config.verbose:
            print(message, file=sys.stderr)

    def trigger(self) -> dict[str, Any]:
        url = f"{self.base_url}/api/v1/webhooks/{self.config.webhook_id}/trigger"
        body = {
            "api_key": self.config.api_key,
            "server_id": self.config.server_id,
            "stack_name": self.config.stack_name,
            "command": self.config.command,
            "options": self.config.options,
            "services": self.config.services,
        }
        self._log(f"POST {url}")
        try:
            response = self.client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise WebhookCLIError(f"Request timed out: {e}", EXIT_TIMEOUT) from e
        except httpx.HTTPError as e:
            raise WebhookCLIError(f"Request failed: {e}", EXIT_NETWORK_ERROR) from e

        self._log(f"Response status: {response.status_code}")
        if not response.is_success:
            raise WebhookCLIError(
                _error_detail(response), exit_code_for_status(response.status_code)
            )
        try:
            return response.json()
        except ValueError as e:
            raise WebhookCLIError("Failed to parse trigger response", EXIT_INTERNAL_ERROR) from e

    def stream(self, operation_id: str, on_output: Callable[[str], None]) -> dict[str, Any] | None:
        """Follow the operation's SSE log. Returns the complete frame, if one arrived."""
        url = f"{self.base_url}/api/v1/operations/{operation_id}/stream"
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "X-API-Key": self.config.api_key,
        }
        self._log(f"GET {url}")
        try:
            with self.client.stream("GET", url, headers=headers) as response:
                if not response.is_success:
                    response.read()
                    raise WebhookCLIError(
                        _error_detail(response), exit_code_for_status(response.status_code)
                    )
                for line in response.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        message = json.loads(line[6:])
                    except ValueError:
                        continue
                    if not isinstance(message, dict):
                        continue
                    if message.get("type") in ("stdout", "stderr"):
                        on_output(str(message.get("data", "")))
                    elif message.get("type") == "error":
                        print(f"Error: {message.get('data', '')}", file=sys.stderr)
                    elif message.get("type") == "complete":
                        return message
        except httpx.TimeoutException as e:
            raise WebhookCLIError(f"Stream timed out: {e}", EXIT_TIMEOUT) from e
        except httpx.HTTPError as e:
            raise WebhookCLIError(f"Stream failed: {e}", EXIT_NETWORK_ERROR) from e
        return None

    def close(self) -> None:
        self.client.close()


def _write_output(data: str) -> None:
    sys.stdout.write(data if data.endswith("\n") else data + "\n")
    sys.stdout.flush()


def run(config: TriggerConfig, client: httpx.Client | None = None) -> int:
    """Trigger, stream, and map the outcome to an exit code."""
    webhook = WebhookClient(config, client)
    try:
        print("Triggering webhook operation...", file=sys.stderr)
        result = webhook.trigger()
        operation_id = result.get("operation_id")
        if not operation_id:
            print("Error: trigger response had no operation_id", file=sys.stderr)
            return EXIT_INTERNAL_ERROR

        print(f"Operation queued: {operation_id}", file=sys.stderr)
        if (result.get("position_in_queue") or 0) > 1:
            print(f"Position in queue: {result['position_in_queue']}", file=sys.stderr)

        complete = webhook.stream(operation_id, _write_output)
    except WebhookCLIError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return e.exit_code
    finally:
        webhook.close()

    if complete is None:
        print("Operation did not complete properly", file=sys.stderr)
        return EXIT_INTERNAL_ERROR

    exit_code = complete.get("exitCode")
    if not isinstance(exit_code, int):
        exit_code = 0
    success = complete.get("success")
    if not isinstance(success, bool):
        success = exit_code == 0

    print(f"Operation completed: {operation_id}", file=sys.stderr)
    print(f"Success: {str(success).lower()}", file=sys.stderr)
    print(f"Exit Code: {exit_code}", file=sys.stderr)
    return EXIT_SUCCESS if success else EXIT_OPERATION_FAILED


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()] if value else []


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="berth-webhook", description="Trigger a Berth webhook and stream the operation log."
    )
    parser.add_argument("--webhook-id", type=int, default=0, help="Webhook ID (required)")
    parser.add_argument("--api-key", default="", help="Webhook API key (required)")
    parser.add_argument("--server-id", type=int, default=0, help="Server ID (required)")
    parser.add_argument("--stack", default="", help="Stack name (required)")
    parser.add_argument("--command", default="", help="Docker Compose command (required)")
    parser.add_argument("--options", default="", help="Comma-separated Docker Compose options")
    parser.add_argument("--services", default="", help="Comma-separated service names")
    parser.add_argument("--berth-url", default="", help="Berth server URL (required)")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS verification")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT_MINUTES,
        help=f"HTTP client timeout in minutes (default: {DEFAULT_TIMEOUT_MINUTES})",
    )
    return parser


def parse_config(argv: list[str] | None = None) -> TriggerConfig:
    """Parse flags. Missing required flags raise WebhookCLIError with exit code 7."""
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on bad flags, which would read as an auth failure
        if e.code == 0:
            raise
        raise WebhookCLIError("Invalid arguments", EXIT_INTERNAL_ERROR) from e

    required = [
        ("--webhook-id", args.webhook_id),
        ("--api-key", args.api_key),
        ("--server-id", args.server_id),
        ("--stack", args.stack),
        ("--command", args.command),
        ("--berth-url", args.berth_url),
    ]
    for flag, value in required:
        if not value:
            raise WebhookCLIError(f"{flag} is required", EXIT_INTERNAL_ERROR)

    return TriggerConfig(
        webhook_id=args.webhook_id,
        api_key=args.api_key,
        server_id=args.server_id,
        stack_name=args.stack,
        command=args.command,
        berth_url=args.berth_url,
        options=_split(args.options),
        services=_split(args.services),
        insecure=args.insecure,
        verbose=args.verbose,
        timeout_minutes=args.timeout,
    )


def main(argv: list[str] | None = None) -> None:
    try:
        config = parse_config(argv)
    except WebhookCLIError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(e.exit_code)
    sys.exit(run(config))


if __name__ == "__main__":
    main()
