import asyncio
import io
import struct
from typing import Any, BinaryIO, Dict, Optional, Tuple, Union

from models.schemas import ScanClean, ScanFailed, ScanInfected, ScanOutcome, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


class DaemonUnavailableError(Exception):
    """clamd refused the connection or its socket does not exist."""


class DaemonProtocolError(Exception):
    """The exchange broke off or the reply could not be understood."""


class ClamAVService:
    """
    Client for the ClamAV daemon (clamd) speaking its native socket protocol.

    Every operation opens a fresh connection, sends one null-terminated
    command, reads the reply to end-of-stream and closes the connection, so
    a single instance can be shared by concurrent requests.

    Scans stream content with INSTREAM: each chunk is prefixed by its length
    as a 4-byte big-endian unsigned integer and the stream ends with a
    zero-length chunk.
    """

    PING = b"zPING\0"
    VERSION = b"zVERSION\0"
    STATS = b"zSTATS\0"
    INSTREAM = b"zINSTREAM\0"

    CHUNK_SIZE = 8192
    LENGTH_PREFIX = struct.Struct(">I")

    EICAR_TEST = b'X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*'

    def __init__(
        self,
        daemon_host: str = "localhost",
        daemon_port: int = 3310,
        timeout: float = 30.0,
        socket_path: Optional[str] = None,
        connect_retries: int = 0,
        retry_backoff: float = 1.0,
    ):
        """
        Initialize ClamAV daemon client

        Args:
            daemon_host: clamd host (TCP)
            daemon_port: clamd port (TCP)
            timeout: Deadline in seconds for one whole exchange
            socket_path: Unix socket path; used instead of TCP when set
            connect_retries: Extra connection attempts after a refusal
            retry_backoff: Base delay in seconds, doubled on each retry
        """
        self.daemon_host = daemon_host
        self.daemon_port = daemon_port
        self.timeout = timeout
        self.socket_path = socket_path
        self.connect_retries = connect_retries
        self.retry_backoff = retry_backoff

        logger.info(
            f"ClamAVService initialized | "
            f"Target: {self.target} | "
            f"Timeout: {self.timeout}s | "
            f"Connect retries: {self.connect_retries}"
        )

    @property
    def target(self) -> str:
        if self.socket_path:
            return f"unix:{self.socket_path}"
        return f"{self.daemon_host}:{self.daemon_port}"

    async def scan(
        self,
        source: Union[bytes, bytearray, memoryview, BinaryIO],
        filename: Optional[str] = None,
    ) -> ScanOutcome:
        """
        Main entry point - stream content to clamd with INSTREAM

        Args:
            source: File content, as bytes or a readable binary file object
            filename: Original filename (for logging only)

        Returns:
            ScanClean, ScanInfected or ScanFailed. Infrastructure failures
            are returned, never raised.
        """
        stream = self._as_stream(source)
        label = filename or "unknown"

        try:
            raw = await asyncio.wait_for(
                self._exchange(self.INSTREAM, stream), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            result = ScanFailed(
                kind="timeout", detail=f"Scan timed out after {self.timeout}s"
            )
        except DaemonUnavailableError as e:
            result = ScanFailed(kind="unavailable", detail=str(e))
        except DaemonProtocolError as e:
            result = ScanFailed(kind="protocol", detail=str(e))
        else:
            result = self.parse_scan_response(raw)

        self._log_scan_result(label, result)
        return result

    async def ping(self) -> bool:
        """True when clamd answers PONG"""
        try:
            reply = await self._command(self.PING)
        except (asyncio.TimeoutError, DaemonUnavailableError, DaemonProtocolError) as e:
            logger.warning(f"ClamAV ping failed at {self.target}: {e or type(e).__name__}")
            return False
        return reply == "PONG"

    async def version(self) -> Optional[str]:
        """clamd engine and signature database version, None on failure"""
        try:
            return await self._command(self.VERSION)
        except (asyncio.TimeoutError, DaemonUnavailableError, DaemonProtocolError) as e:
            logger.error(f"Failed to get ClamAV version: {e or type(e).__name__}")
            return None

    async def stats(self) -> Optional[str]:
        """clamd thread pool and queue statistics, None on failure"""
        try:
            return await self._command(self.STATS)
        except (asyncio.TimeoutError, DaemonUnavailableError, DaemonProtocolError) as e:
            logger.error(f"Failed to get ClamAV stats: {e or type(e).__name__}")
            return None

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check on the ClamAV daemon

        Pings, reads the version and scans the EICAR test string; the daemon
        is healthy only if it answers and detects EICAR.
        """
        health: Dict[str, Any] = {
            "service": "clamav",
            "healthy": False,
            "timestamp": utc_now().isoformat(),
            "checks": {}
        }

        available = await self.ping()
        health["checks"]["daemon"] = {"available": available, "target": self.target}

        if not available:
            return health

        health["checks"]["version"] = await self.version()

        test_result = await self.scan(self.EICAR_TEST, filename="eicar_test.txt")
        detected = isinstance(test_result, ScanInfected)
        health["checks"]["test_scan"] = {
            "executed": True,
            "detected_eicar": detected,
        }
        health["healthy"] = detected

        logger.info(f"ClamAV health check: {'HEALTHY' if health['healthy'] else 'UNHEALTHY'}")
        return health

    @classmethod
    def parse_scan_response(cls, raw: str) -> ScanOutcome:
        """
        Interpret an INSTREAM reply line

        clamd reply formats:
        stream: OK
        stream: Eicar-Signature FOUND
        stream: <detail> ERROR  /  INSTREAM size limit exceeded. ERROR
        """
        line = raw.strip("\0").strip()

        if not line:
            return ScanFailed(kind="protocol", detail="empty response", raw_response=raw)

        if line.endswith(": OK"):
            return ScanClean(raw_response=line)

        if line.endswith(" FOUND"):
            _, separator, threat_name = line[: -len(" FOUND")].partition(": ")
            if separator and threat_name.strip():
                return ScanInfected(threat_name=threat_name.strip(), raw_response=line)

        if line.endswith(" ERROR"):
            detail = line[: -len(" ERROR")]
            _, separator, reason = detail.partition(": ")
            return ScanFailed(
                kind="protocol",
                detail=(reason if separator else detail).strip() or line,
                raw_response=line,
            )

        if "ERROR" in line:
            return ScanFailed(kind="protocol", detail=line, raw_response=line)

        return ScanFailed(
            kind="protocol", detail="unknown scan result format", raw_response=line
        )

    async def _command(self, command: bytes) -> str:
        raw = await asyncio.wait_for(self._exchange(command), timeout=self.timeout)
        return raw.strip("\0").strip()

    async def _exchange(self, command: bytes, stream: Optional[BinaryIO] = None) -> str:
        """One connection: send command (and stream), read reply, close"""
        reader, writer = await self._open_connection()

        try:
            writer.write(command)
            if stream is not None:
                await self._send_chunks(writer, stream)
            await writer.drain()

            response = await reader.read()
        except OSError as e:
            raise DaemonProtocolError(f"Connection to clamd lost: {e}") from e
        finally:
            await self._close(writer)

        return response.decode("utf-8", errors="replace")

    async def _send_chunks(self, writer: asyncio.StreamWriter, stream: BinaryIO) -> None:
        while True:
            chunk = stream.read(self.CHUNK_SIZE)
            if not chunk:
                break
            writer.write(self.LENGTH_PREFIX.pack(len(chunk)) + chunk)
            await writer.drain()

        writer.write(self.LENGTH_PREFIX.pack(0))

    async def _open_connection(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        attempt = 0
        while True:
            try:
                if self.socket_path:
                    return await asyncio.open_unix_connection(self.socket_path)
                return await asyncio.open_connection(self.daemon_host, self.daemon_port)
            except (ConnectionRefusedError, FileNotFoundError) as e:
                if attempt >= self.connect_retries:
                    raise DaemonUnavailableError(
                        f"Could not connect to ClamAV at {self.target}: {e}"
                    ) from e
                delay = self.retry_backoff * (2 ** attempt)
                # a retry that cannot finish before the deadline is still a refusal
                if loop.time() + delay >= deadline:
                    raise DaemonUnavailableError(
                        f"Could not connect to ClamAV at {self.target}: {e} "
                        f"(no time left to retry within {self.timeout}s)"
                    ) from e
                attempt += 1
                logger.warning(
                    f"ClamAV connection attempt {attempt} failed: {e}; retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
            except OSError as e:
                raise DaemonUnavailableError(
                    f"Could not connect to ClamAV at {self.target}: {e}"
                ) from e

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug(f"clamd connection closed uncleanly: {e}")

    def _as_stream(self, source: Union[bytes, bytearray, memoryview, BinaryIO]) -> BinaryIO:
        if isinstance(source, (bytes, bytearray, memoryview)):
            return io.BytesIO(bytes(source))

        if hasattr(source, "read"):
            if hasattr(source, "seekable") and source.seekable():
                source.seek(0)
            return source

        raise TypeError(f"Unsupported file input type: {type(source).__name__}")

    def _log_scan_result(self, label: str, result: ScanOutcome) -> None:
        if isinstance(result, ScanClean):
            logger.info(f"File scan clean: {label}")
        elif isinstance(result, ScanInfected):
            logger.warning(
                f"THREAT DETECTED | "
                f"File: {label} | "
                f"Threat: {result.threat_name}"
            )
            logger.warning(
                f"SECURITY ALERT: virus detected in uploaded file | "
                f"file={label} | "
                f"threat={result.threat_name} | "
                f"at={result.scanned_at.isoformat()}"
            )
        else:
            logger.error(f"File scan error ({result.kind}): {label} - {result.detail}")
