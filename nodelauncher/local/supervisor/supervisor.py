import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import ChainConfigError, ControlError, DependencyError, SpawnError
from nodelauncher.local.chains import ChainDefinition, ChainPaths, DependencyGraph
from nodelauncher.local.events import EventBus, ChainOutput, ChainStatusUpdate
from nodelauncher.local.supervisor.control import ChainControl, JsonRpcControl, control_from_spec
from nodelauncher.local.supervisor.launchers import LaunchedProcess, ProcessLauncher, select_launcher
from nodelauncher.local.supervisor.sync_monitor import SyncMonitor

log = logging.getLogger(__name__)

STATUS_NOT_DOWNLOADED = "not_downloaded"
STATUS_STOPPED = "stopped"
STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
STATUS_STOPPING = "stopping"
STATUS_ERROR = "error"

OUTPUT_READ_SIZE = 4096


@dataclass
class ProcessRecord:
    chain_id: str
    handle: Optional[LaunchedProcess] = None
    status: str = STATUS_STARTING
    ready_detected: bool = False
    stop_requested: bool = False
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    readiness_task: Optional[asyncio.Task] = None
    sync_task: Optional[asyncio.Task] = None
    io_tasks: List[asyncio.Task] = field(default_factory=list)
    # Tail of recent output, so a log marker split across reads still matches.
    output_tail: str = ""


def _result(success: bool, error: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": success}
    if error is not None:
        result["error"] = error
    result.update(extra)
    return result


class ProcessSupervisor:
    """
    Starts, watches and stops chain processes.

    The supervisor is the only owner of ProcessRecords: a record exists from
    the moment a start is accepted until the process has exited. A chain may
    only start while all of its dependencies are running, and may only be
    stopped while none of its dependents are tracked unless the stop is forced.
    One chain's failure is reported as a status event and never raised into
    another chain's operations.
    """

    def __init__(self, definitions: Mapping[str, ChainDefinition], graph: DependencyGraph,
                 events: EventBus, paths: ChainPaths,
                 launchers: Optional[Mapping[str, ProcessLauncher]] = None,
                 controls: Optional[Mapping[str, ChainControl]] = None,
                 readiness_poll_interval: Optional[float] = None, readiness_timeout: Optional[float] = None,
                 rpc_timeout: Optional[float] = None, graceful_stop_timeout: Optional[float] = None,
                 terminate_timeout: Optional[float] = None, kill_timeout: Optional[float] = None,
                 sync_poll_interval: Optional[float] = None):
        self.definitions = dict(definitions)
        self.graph = graph
        self.events = events
        self.paths = paths
        self.readiness_poll_interval = readiness_poll_interval or app_globals.READINESS_POLL_INTERVAL
        self.readiness_timeout = readiness_timeout or app_globals.READINESS_TIMEOUT
        self.rpc_timeout = rpc_timeout or app_globals.RPC_TIMEOUT
        self.graceful_stop_timeout = graceful_stop_timeout or app_globals.GRACEFUL_STOP_TIMEOUT
        self.terminate_timeout = terminate_timeout or app_globals.TERMINATE_TIMEOUT
        self.kill_timeout = kill_timeout or app_globals.KILL_TIMEOUT
        self.sync_poll_interval = sync_poll_interval or app_globals.SYNC_POLL_INTERVAL

        # Strategies are fixed per chain when the table is loaded.
        self._launchers: Dict[str, ProcessLauncher] = {
            chain_id: select_launcher(definition, paths.platform) for chain_id, definition in self.definitions.items()
        }
        self._launchers.update(launchers or {})
        self._controls: Dict[str, Optional[ChainControl]] = {
            chain_id: control_from_spec(definition.control, self.rpc_timeout)
            for chain_id, definition in self.definitions.items()
        }
        self._controls.update(controls or {})

        self._records: Dict[str, ProcessRecord] = {}
        self._spawn_errors: Dict[str, str] = {}

    #* --- Queries ---
    def status(self, chain_id: str) -> str:
        """
        Current status of a chain.

        :raises ChainConfigError: For an unknown chain id.
        """
        definition = self._definition(chain_id)
        record = self._records.get(chain_id)
        if record is not None:
            return record.status
        if chain_id in self._spawn_errors:
            return STATUS_ERROR
        if self._launchers[chain_id].installed(definition, self.paths):
            return STATUS_STOPPED
        return STATUS_NOT_DOWNLOADED

    def is_running(self, chain_id: str) -> bool:
        record = self._records.get(chain_id)
        return record is not None and record.status == STATUS_RUNNING

    def is_tracked(self, chain_id: str) -> bool:
        """True while a start has been accepted and the process has not exited."""
        return chain_id in self._records

    def tracked_chains(self) -> List[str]:
        return list(self._records)

    def running_chains(self) -> List[str]:
        return [chain_id for chain_id, record in self._records.items() if record.status == STATUS_RUNNING]

    def pid(self, chain_id: str) -> Optional[int]:
        record = self._records.get(chain_id)
        return record.handle.pid if record and record.handle else None

    def last_error(self, chain_id: str) -> Optional[str]:
        return self._spawn_errors.get(chain_id)

    async def wait_until_running(self, chain_id: str, timeout: float, poll_interval: float = 0.5) -> bool:
        """
        Waits until a chain reaches ``running``.

        Polls in slices of ``poll_interval`` so a chain that is started by
        someone else while we wait is still picked up.

        :return: False if the timeout elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.is_running(chain_id):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            record = self._records.get(chain_id)
            if record is None:
                await asyncio.sleep(min(poll_interval, remaining))
                continue
            try:
                await asyncio.wait_for(record.ready.wait(), min(poll_interval, remaining))
            except asyncio.TimeoutError:
                continue
        return True

    def _definition(self, chain_id: str) -> ChainDefinition:
        definition = self.definitions.get(chain_id)
        if definition is None:
            raise ChainConfigError(f"Chain not found: {chain_id}")
        return definition

    #* --- Start ---
    def build_args(self, definition: ChainDefinition, extra_args: Optional[List[str]] = None) -> List[str]:
        """
        Formats the chain's launch arguments.

        ``{data_dir}``, ``{install_dir}`` and ``{launcher_dir}`` placeholders are
        filled in; first-run arguments are added while the first-run marker is
        missing from the data directory.
        """
        data_dir = self.paths.data_dir(definition)
        context = {
            "data_dir": str(data_dir),
            "install_dir": str(self.paths.install_dir(definition)),
            "launcher_dir": str(app_globals.USER_DATA_DIR),
        }
        args = [arg.format(**context) for arg in definition.args]
        if definition.first_run and not (data_dir / definition.first_run.marker).exists():
            log.info(f"[{definition.id}] First run detected ({definition.first_run.marker} missing)")
            args.extend(arg.format(**context) for arg in definition.first_run.args)
        args.extend(extra_args or [])
        return args

    def _check_dependencies(self, definition: ChainDefinition) -> None:
        missing = [dep for dep in self.graph.dependencies(definition.id) if not self.is_running(dep)]
        if missing:
            raise DependencyError(f"missing dependency: {', '.join(missing)}")

    async def start(self, chain_id: str, extra_args: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Starts a chain whose dependencies are all running.

        Validation happens before any side effect; a rejected start spawns nothing.

        :param chain_id: The chain to start.
        :param extra_args: Arguments appended after the configured ones.
        :return: ``{"success": True, "pid": ...}`` or ``{"success": False, "error": ...}``.
        """
        try:
            definition = self._definition(chain_id)
            if chain_id in self._records:
                return _result(False, f"Chain '{chain_id}' is already {self._records[chain_id].status}")
            self._check_dependencies(definition)
            launcher = self._launchers[chain_id]
            if not launcher.installed(definition, self.paths):
                return _result(False, f"Binary for '{chain_id}' not found; download it first")
            args = self.build_args(definition, extra_args)
        except (ChainConfigError, DependencyError) as e:
            log.warning(f"Refusing to start '{chain_id}': {e}")
            return _result(False, str(e))

        record = ProcessRecord(chain_id=chain_id)
        self._records[chain_id] = record
        self._spawn_errors.pop(chain_id, None)
        self._publish_status(chain_id, STATUS_STARTING)
        log.info(f"Starting chain '{chain_id}'...")

        try:
            self.paths.data_dir(definition).mkdir(parents=True, exist_ok=True)
            record.handle = await launcher.launch(definition, self.paths, args)
        except (SpawnError, OSError) as e:
            self._records.pop(chain_id, None)
            record.exited.set()
            self._spawn_errors[chain_id] = str(e)
            log.error(f"Failed to start chain '{chain_id}': {e}")
            self._publish_status(chain_id, STATUS_ERROR, error=str(e))
            return _result(False, str(e))

        if record.stop_requested:
            # Stopped while the launcher was still working; the exit is reported through _watch.
            log.warning(f"Chain '{chain_id}' was stopped while launching; killing PID {record.handle.pid}")
            record.status = STATUS_STOPPING
            record.handle.kill()
            self._watch(record, definition)
            return _result(False, f"Chain '{chain_id}' was stopped while launching")

        self._watch(record, definition)
        log.info(f"Chain '{chain_id}' started with PID {record.handle.pid}")
        return _result(True, pid=record.handle.pid)

    def _watch(self, record: ProcessRecord, definition: ChainDefinition) -> None:
        loop = asyncio.get_running_loop()
        handle = record.handle
        pumps = [
            loop.create_task(self._pump(record, definition, reader, name), name=f"{record.chain_id}-{name}")
            for name, reader in (("stdout", handle.stdout), ("stderr", handle.stderr)) if reader is not None
        ]
        record.io_tasks = pumps
        record.io_tasks.append(loop.create_task(self._wait_exit(record, pumps), name=f"{record.chain_id}-exit"))

        if not pumps:
            # Nothing to read (app bundles): being found alive is the signal.
            self._mark_ready(record, "process detected")
            return
        control = self._controls.get(record.chain_id)
        if definition.readiness.probe and control is not None:
            record.readiness_task = loop.create_task(
                self._poll_readiness(record, control), name=f"{record.chain_id}-readiness"
            )

    #* --- Readiness ---
    def _mark_ready(self, record: ProcessRecord, source: str) -> None:
        """Moves a starting chain to running exactly once, whichever signal arrives first."""
        if record.ready_detected or record.status != STATUS_STARTING:
            return
        record.ready_detected = True
        record.status = STATUS_RUNNING
        record.ready.set()
        task = record.readiness_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        log.info(f"Chain '{record.chain_id}' is running ({source})")
        self._publish_status(record.chain_id, STATUS_RUNNING)
        self._start_sync_monitor(record)

    def _start_sync_monitor(self, record: ProcessRecord) -> None:
        spec = self.definitions[record.chain_id].control
        control = self._controls.get(record.chain_id)
        if spec is None or not spec.sync_status or not isinstance(control, JsonRpcControl):
            return
        monitor = SyncMonitor(record.chain_id, control, self.events, self.sync_poll_interval)
        record.sync_task = asyncio.get_running_loop().create_task(monitor.run(), name=f"{record.chain_id}-sync")

    def _on_output(self, record: ProcessRecord, definition: ChainDefinition, stream: str, text: str) -> None:
        self.events.publish(ChainOutput(chain_id=record.chain_id, stream=stream, data=text))
        proc_logger = logging.getLogger(f"proc.{record.chain_id}")
        level = logging.WARNING if stream == "stderr" else logging.INFO
        for line in text.splitlines():
            if line.strip():
                proc_logger.log(level, line.rstrip())

        if record.ready_detected:
            return
        marker = definition.readiness.log_marker
        if marker:
            window = record.output_tail + text
            if marker in window:
                self._mark_ready(record, "log marker")
            record.output_tail = window[-len(marker):]
        elif not definition.readiness.probe:
            self._mark_ready(record, "first output")

    async def _pump(self, record: ProcessRecord, definition: ChainDefinition,
                    reader: asyncio.StreamReader, stream: str) -> None:
        while True:
            chunk = await reader.read(OUTPUT_READ_SIZE)
            if not chunk:
                return
            self._on_output(record, definition, stream, chunk.decode("utf-8", errors="replace"))

    async def _poll_readiness(self, record: ProcessRecord, control: ChainControl) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout
        while record.status == STATUS_STARTING:
            if await control.probe():
                self._mark_ready(record, "control probe")
                return
            if loop.time() >= deadline:
                log.warning(
                    f"Chain '{record.chain_id}' did not answer its control endpoint within "
                    f"{self.readiness_timeout}s; waiting for its log marker only"
                )
                return
            await asyncio.sleep(self.readiness_poll_interval)

    #* --- Exit ---
    async def _wait_exit(self, record: ProcessRecord, pumps: List[asyncio.Task]) -> None:
        exit_code, exit_signal = await record.handle.wait()
        if pumps:
            # Let the readers flush the last output before reporting the exit.
            await asyncio.wait(pumps, timeout=1)
        self._on_exit(record, exit_code, exit_signal)

    def _on_exit(self, record: ProcessRecord, exit_code: Optional[int], exit_signal: Optional[str]) -> None:
        if self._records.get(record.chain_id) is record:
            del self._records[record.chain_id]
        if record.readiness_task is not None:
            record.readiness_task.cancel()
        if record.sync_task is not None:
            record.sync_task.cancel()
        for task in record.io_tasks:
            if task is not asyncio.current_task():
                task.cancel()
        unexpected = not record.stop_requested
        record.status = STATUS_STOPPED
        record.exited.set()
        if unexpected:
            log.warning(f"Chain '{record.chain_id}' exited unexpectedly (code={exit_code}, signal={exit_signal})")
        else:
            log.info(f"Chain '{record.chain_id}' stopped (code={exit_code}, signal={exit_signal})")
        self.events.publish(ChainStatusUpdate(
            chain_id=record.chain_id, status=STATUS_STOPPED,
            exit_code=exit_code, exit_signal=exit_signal, unexpected=unexpected,
        ))

    #* --- Stop ---
    async def stop(self, chain_id: str, force: bool = False) -> Dict[str, Any]:
        """
        Stops a chain: control-endpoint shutdown, then SIGTERM, then SIGKILL of
        its whole process tree, each bounded by its own timeout.

        :param chain_id: The chain to stop.
        :param force: Stop even while dependents are still tracked.
        :return: ``{"success": bool, "error": ...}``.
        """
        record = self._records.get(chain_id)
        if record is None:
            return _result(False, "Process not found")
        if not force:
            live = [dep for dep in self.graph.dependents(chain_id) if dep in self._records]
            if live:
                message = f"dependents still running: {', '.join(live)}"
                log.warning(f"Refusing to stop '{chain_id}': {message}")
                return _result(False, message)
        if record.stop_requested:
            # Another stop is already escalating; share its outcome.
            await record.exited.wait()
            return _result(True)

        record.stop_requested = True
        record.status = STATUS_STOPPING
        self._publish_status(chain_id, STATUS_STOPPING)
        if record.sync_task is not None:
            record.sync_task.cancel()
        if record.handle is None:
            # start() kills the process as soon as the launcher hands it over.
            log.info(f"Chain '{chain_id}' is still launching; it will be killed once it appears")
            await record.exited.wait()
            return _result(True)
        if await self._terminate(record):
            return _result(True)
        return _result(False, f"Chain '{chain_id}' did not exit after being killed")

    async def _wait_exited(self, record: ProcessRecord, timeout: float) -> bool:
        try:
            await asyncio.wait_for(record.exited.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _terminate(self, record: ProcessRecord) -> bool:
        chain_id = record.chain_id
        control = self._controls.get(chain_id)
        if control is not None and record.ready_detected:
            try:
                await asyncio.wait_for(control.shutdown(), self.rpc_timeout)
                log.info(f"Sent graceful stop to '{chain_id}'")
                if await self._wait_exited(record, self.graceful_stop_timeout):
                    return True
                log.warning(f"'{chain_id}' did not exit {self.graceful_stop_timeout}s after its stop request")
            except (ControlError, asyncio.TimeoutError) as e:
                log.warning(f"Graceful stop of '{chain_id}' failed: {e or 'timed out'}")

        if record.exited.is_set():
            return True
        record.handle.terminate()
        if await self._wait_exited(record, self.terminate_timeout):
            return True

        log.warning(f"'{chain_id}' ignored SIGTERM for {self.terminate_timeout}s; killing its process tree")
        record.handle.kill()
        return await self._wait_exited(record, self.kill_timeout)

    async def force_kill_all(self) -> None:
        """
        Kills every tracked process tree immediately and waits briefly for the exits.

        Chains still inside their launcher are marked stopped; start() kills them
        the moment the launcher returns a handle.
        """
        records = list(self._records.values())
        for record in records:
            record.stop_requested = True
            if record.handle is not None:
                log.warning(f"Force-killing chain '{record.chain_id}' (PID {record.handle.pid})")
                record.handle.kill()
            else:
                log.warning(f"Chain '{record.chain_id}' is still launching; it will be killed once it appears")
        waiting = [record.exited.wait() for record in records]
        if waiting:
            try:
                await asyncio.wait_for(asyncio.gather(*waiting), self.kill_timeout)
            except asyncio.TimeoutError:
                log.error("Some chains were still alive after being force-killed")

    #* --- Events ---
    def _publish_status(self, chain_id: str, status: str, error: Optional[str] = None) -> None:
        self.events.publish(ChainStatusUpdate(chain_id=chain_id, status=status, error=error))
