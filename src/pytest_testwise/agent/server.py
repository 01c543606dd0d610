"""HTTP control channel of an agent.

Every agent process serves a small HTTP API that lets external tooling drive
the test boundary protocol and read the collected coverage:

    GET  /test                   identity of the active test, empty when idle
    POST /test/start/{id}        start a test
    POST /test/end/{id}          end a test, optional JSON execution body
    POST /dump                   coverage of the active test so far
    GET  /report                the accumulated report as JSON
    GET  /metadata               all session metadata as JSON
    GET  /partition (and PUT)    the same for message, revision and commit

The ControlServer runs the application with uvicorn in a daemon thread on a
dynamically allocated port, so any number of agent processes can serve in
parallel on one machine.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
import uvicorn

from pytest_testwise.agent.metadata import FIELDS, MetadataStore
from pytest_testwise.errors import DumpError, InvalidTransitionError
from pytest_testwise.report.json_reporter import JsonReporter
from pytest_testwise.report.models import TestExecutionRecord


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request

    from pytest_testwise.agent.coordinator import TestBoundaryCoordinator


logger = logging.getLogger(__name__)


def create_routes(coordinator: TestBoundaryCoordinator, metadata: MetadataStore) -> list[Route]:
    """Create the control channel routes bound to a coordinator.

    Args:
        coordinator: Coordinator driven by the routes.
        metadata: Store of the session metadata.

    Returns:
        The routes of the control channel.
    """
    reporter = JsonReporter()

    def current_test(request: Request) -> Response:
        _ = request  # unused
        return PlainTextResponse(coordinator.current_test or '')

    def start_test(request: Request) -> Response:
        test_id = request.path_params['test_id']
        if not test_id:
            return PlainTextResponse('Test identity is missing', status_code=400)
        try:
            coordinator.start_test(test_id)
        except InvalidTransitionError as exc:
            return PlainTextResponse(str(exc), status_code=409)
        except DumpError as exc:
            return PlainTextResponse(str(exc), status_code=503)
        return Response(status_code=204)

    async def end_test(request: Request) -> Response:
        test_id = request.path_params['test_id']
        if not test_id:
            return PlainTextResponse('Test identity is missing', status_code=400)

        execution = None
        body = await request.body()
        if body.strip():
            try:
                execution = TestExecutionRecord.from_dict(json.loads(body), uniform_path=test_id)
            except (ValueError, AttributeError) as exc:
                return PlainTextResponse(f'Invalid test execution: {exc}', status_code=400)

        try:
            fragment = await run_in_threadpool(coordinator.end_test, test_id, execution)
        except InvalidTransitionError as exc:
            return PlainTextResponse(str(exc), status_code=409)
        except DumpError as exc:
            return PlainTextResponse(str(exc), status_code=503)
        return JSONResponse(reporter.fragment_to_dict(fragment))

    async def dump(request: Request) -> Response:
        _ = request  # unused
        try:
            fragment = await run_in_threadpool(coordinator.dump_intermediate)
        except InvalidTransitionError as exc:
            return PlainTextResponse(str(exc), status_code=409)
        except DumpError as exc:
            return PlainTextResponse(str(exc), status_code=503)
        return JSONResponse(reporter.fragment_to_dict(fragment))

    def report(request: Request) -> Response:
        _ = request  # unused
        return JSONResponse(reporter.report_to_dict(coordinator.report))

    def all_metadata(request: Request) -> Response:
        _ = request  # unused
        return JSONResponse(metadata.metadata.to_dict())

    def metadata_endpoint(name: str) -> Callable[[Request], Awaitable[Response]]:
        async def endpoint(request: Request) -> Response:
            if request.method == 'PUT':
                value = _plain_text_value(await request.body())
                if not value:
                    msg = f'The new {name} is missing in the request body, send it as plain text'
                    logger.error(msg)
                    return PlainTextResponse(msg, status_code=400)
                metadata.set(name, value)
                logger.debug('Set %s to %r', name, value)
                return Response(status_code=204)
            return PlainTextResponse(metadata.get(name) or '')

        return endpoint

    routes = [
        Route('/test', current_test, methods=['GET']),
        Route('/test/start/{test_id:path}', start_test, methods=['POST']),
        Route('/test/end/{test_id:path}', end_test, methods=['POST']),
        Route('/dump', dump, methods=['POST']),
        Route('/report', report, methods=['GET']),
        Route('/metadata', all_metadata, methods=['GET']),
    ]
    routes.extend(Route(f'/{name}', metadata_endpoint(name), methods=['GET', 'PUT']) for name in FIELDS)
    return routes


def _plain_text_value(body: bytes) -> str:
    """Decode a metadata PUT body, dropping one pair of surrounding double quotes."""
    value = body.decode('utf-8', errors='replace').strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):  # noqa: PLR2004
        value = value[1:-1].strip()
    return value


def create_app(coordinator: TestBoundaryCoordinator, metadata: MetadataStore | None = None) -> Starlette:
    """Create the Starlette application of the control channel."""
    store = metadata if metadata is not None else MetadataStore()
    return Starlette(routes=create_routes(coordinator, store))


class ControlServer:
    """Serves an application with uvicorn in a background thread.

    The listening socket is bound before the server starts, so the port is
    known as soon as start() returns, even when it was allocated dynamically.
    """

    def __init__(self, app: Starlette, host: str = '127.0.0.1', port: int = 0) -> None:
        """Initialize a stopped server.

        Args:
            app: The application to serve.
            host: Interface to bind to.
            port: Port to bind to. 0 picks a free port.
        """
        self._app = app
        self._host = host
        self._port = port
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._socket: socket.socket | None = None

    @property
    def port(self) -> int:
        """The bound port. Only valid while running."""
        if self._socket is None:
            msg = 'Control server is not running'
            raise RuntimeError(msg)
        return self._socket.getsockname()[1]

    @property
    def base_url(self) -> str:
        """URL clients use to reach the server."""
        return f'http://{self._host}:{self.port}'

    @property
    def is_running(self) -> bool:
        """Whether the server thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 10.0) -> int:
        """Start serving and wait until the server accepts connections.

        Args:
            timeout: Seconds to wait for the server to come up.

        Returns:
            The bound port.

        Raises:
            RuntimeError: If the server is already running or does not start in time.
        """
        if self.is_running:
            msg = 'Control server is already running'
            raise RuntimeError(msg)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self._host, self._port))
        self._socket = sock

        config = uvicorn.Config(self._app, log_level='warning', lifespan='off', ws='none')
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={'sockets': [sock]},
            name='testwise-control-server',
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                msg = f'Control server did not start within {timeout}s'
                raise RuntimeError(msg)
            time.sleep(0.01)

        logger.info('Testwise control server listening on %s', self.base_url)
        return self.port

    def stop(self, timeout: float = 5.0) -> None:
        """Stop serving. Safe to call when the server is not running."""
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning('Control server thread did not stop within %.1fs', timeout)
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._thread = None
        self._socket = None
