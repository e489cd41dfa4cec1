"""
Local control protocol: length-prefixed JSON over a loopback TCP socket.

Every message is a 4-byte big-endian length followed by that many bytes of
UTF-8 JSON. Requests look like {"command": str, "args": {...}} and
responses like {"success": bool, "error": str, "data": {...}}.
"""
import json
import logging
import socket
import socketserver
import struct
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import DEFAULT_CONTROL_PORT
from .errors import EnqueueError

logger = logging.getLogger(__name__)

HEADER = struct.Struct('!I')
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


def encode_message(payload: Dict[str, Any]) -> bytes:
    body = json.dumps(payload).encode('utf-8')
    return HEADER.pack(len(body)) + body


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(remaining)
        if not chunk:
            raise ConnectionError("Connection closed mid-message")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def read_frame(sock: socket.socket) -> bytes:
    """Read one length-prefixed frame.

    Raises:
        ConnectionError: If the peer closes the connection
        ValueError: If the announced frame is larger than MAX_MESSAGE_SIZE
    """
    (length,) = HEADER.unpack(_recv_exactly(sock, HEADER.size))
    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message of {length} bytes exceeds limit")
    return _recv_exactly(sock, length)


def _ok(data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    response = {'success': True}
    if data is not None:
        response['data'] = data
    return response


def _error(message: str) -> Dict[str, Any]:
    return {'success': False, 'error': message}


class _ControlRequestHandler(socketserver.BaseRequestHandler):
    """Serves requests on one connection until the client disconnects."""

    def handle(self) -> None:
        while True:
            try:
                frame = read_frame(self.request)
            except ConnectionError:
                return
            except ValueError as e:
                logger.warning(f"Rejected control message: {e}")
                self.request.sendall(encode_message(_error("Invalid command format")))
                return

            try:
                message = json.loads(frame.decode('utf-8'))
            except (UnicodeDecodeError, ValueError):
                response = _error("Invalid command format")
            else:
                response = self.server.control.handle_command(message)
            self.request.sendall(encode_message(response))


class _ControlTCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class ControlServer:
    """Translates control commands into upload manager calls.

    Args:
        coordinator: UploadCoordinator owning the manager
        host: Interface to bind, loopback by default
        port: TCP port, 0 picks a free one
    """

    def __init__(self, coordinator, host: str = "127.0.0.1", port: int = DEFAULT_CONTROL_PORT):
        self.coordinator = coordinator
        self.host = host
        self._requested_port = port
        self._server: Optional[_ControlTCPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            'status': self._status,
            'upload': self._upload,
            'list': self._list,
            'pause': self._pause,
            'resume': self._resume,
            'cancel': self._cancel,
            'history': self._history,
            'retry': self._retry,
        }

    @property
    def manager(self):
        return self.coordinator.manager

    @property
    def port(self) -> int:
        if self._server is None:
            return self._requested_port
        return self._server.server_address[1]

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _ControlTCPServer((self.host, self._requested_port), _ControlRequestHandler)
        self._server.control = self
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="control-server", daemon=True
        )
        self._thread.start()
        logger.info(f"Control server listening on {self.host}:{self.port}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
        self._server = None
        self._thread = None
        logger.info("Control server stopped")

    def handle_command(self, message: Any) -> Dict[str, Any]:
        """Dispatch one decoded request and build its response."""
        if not isinstance(message, dict) or not isinstance(message.get('command'), str):
            return _error("Invalid command format")

        args = message.get('args') or {}
        if not isinstance(args, dict):
            return _error("Invalid command format")

        command = message['command']
        handler = self._handlers.get(command)
        if handler is None:
            return _error(f"Unknown command: {command}")

        logger.debug(f"Received command: {command}")
        try:
            return handler(args)
        except (EnqueueError, ValueError, TypeError) as e:
            return _error(str(e))
        except Exception as e:
            logger.exception(f"Command {command} failed")
            return _error(str(e))

    def _status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return _ok(self.manager.get_status().to_dict())

    def _upload(self, args: Dict[str, Any]) -> Dict[str, Any]:
        path = args.get('path')
        if not path:
            return _error("Missing required argument: path")
        job_ids = self.coordinator.upload_path(
            Path(path),
            bucket=args.get('bucket'),
            key=args.get('key'),
            prefix=args.get('prefix')
        )
        return _ok({'queued': len(job_ids), 'jobIds': job_ids})

    def _list(self, args: Dict[str, Any]) -> Dict[str, Any]:
        jobs = [
            {
                'id': job.id,
                'name': job.display_name,
                'status': job.status.value,
                'progress': round(job.percentage, 2),
                'destination': job.s3_uri,
                'error': job.last_error,
            }
            for job in self.manager.list_jobs()
        ]
        return _ok({'jobs': jobs})

    def _pause(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.manager.pause()
        return _ok({'paused': True})

    def _resume(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.manager.resume()
        return _ok({'paused': False})

    def _cancel(self, args: Dict[str, Any]) -> Dict[str, Any]:
        job_id = args.get('id')
        if job_id:
            if not self.manager.cancel(str(job_id)):
                return _error(f"No active job with id {job_id}")
            return _ok({'cancelled': 1})
        return _ok({'cancelled': self.manager.cancel_all()})

    def _history(self, args: Dict[str, Any]) -> Dict[str, Any]:
        limit = int(args.get('limit', 10))
        items = [
            {
                'name': item.filename,
                'status': item.status,
                's3uri': item.s3_uri,
                'date': item.completed_at or item.started_at,
                'url': item.presigned_url,
                'error': item.error,
            }
            for item in self.manager.get_history(limit)
        ]
        return _ok({'items': items})

    def _retry(self, args: Dict[str, Any]) -> Dict[str, Any]:
        job_id = args.get('id')
        if job_id:
            if not self.manager.retry(str(job_id), fresh=bool(args.get('fresh', False))):
                return _error(f"No failed job with id {job_id}")
            return _ok({'retried': 1})
        return _ok({'retried': self.manager.retry_all_failed()})


class ControlClient:
    """Client side of the control protocol, used by the CLI."""

    def __init__(self, host: str = "127.0.0.1", port: int = DEFAULT_CONTROL_PORT,
                 timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def send(self, command: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one command and wait for its response.

        Raises:
            ConnectionError: If the server is unreachable or hangs up
        """
        request = {'command': command}
        if args:
            request['args'] = args
        with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
            sock.sendall(encode_message(request))
            return json.loads(read_frame(sock).decode('utf-8'))
