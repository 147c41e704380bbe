"""
Coordinator - Single event loop owning fleet state and per-UAV link arbitration.

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025

Every mutation of the FleetRegistry and of the ModeArbiter table happens here, on
one worker thread, in event-arrival order. Transport threads and timers never
touch that state directly; they `submit()` events.

Event Types:
    RegisterEvent:        UAV registration (acked on the UAV's connection)
    HeartbeatEvent:       telemetry delta -> per-tick link pipeline
    SensorDataEvent:      raw payload -> TransmissionFilter -> package sink
    DisconnectEvent:      explicit disconnect or dropped connection
    CommandEvent:         dispatch a command to a UAV
    CommandResponseEvent: UAV answer to a pending command
    SweepTick:            liveness sweep, command expiry, environment update
    RotationTick:         periodic master re-election

Per-tick link pipeline (on heartbeat):
    environment snapshot -> LinkQualityEstimator -> ModeArbiter -> registry
    -> broadcast `uav_status_update` (+ `isac_mode_changed` on a committed switch)

Broadcast events (fan-out to observers, no ack):
    uav_connected, uav_status_update, uav_disconnected, isac_mode_changed,
    master_changed, uav_data_update

Commands:
    `send_command()` blocks only the calling thread, never the worker. A pending
    command resolves when the UAV answers, when the command times out (default
    10s), or when the target disconnects.

Example:
    >>> coordinator = Coordinator(config, registry, arbiter, estimator, elector,
    ...                           transmission_filter, environment)
    >>> coordinator.add_observer(lambda event, data: print(event, data))
    >>> coordinator.start()
    >>> coordinator.submit(HeartbeatEvent("uav-1", position=[10, 0, 20]))
"""

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from isac import config as C
from isac.config import section
from isac.environment import EnvironmentSimulator, EnvironmentSnapshot
from isac.link_quality import LinkQualityEstimator
from isac.mode_arbiter import ModeArbiter
from isac.transmission import SensorPayload, TransmissionFilter, TransmissionPackage

from .connection import error, request, result
from .fleet_registry import FleetRegistry, FleetState, RegistrationError
from .master_elector import MasterElector

logger = logging.getLogger(__name__)

# JSON-RPC error codes used in acks
INVALID_PARAMS = -32602


class FleetInvariantError(AssertionError):
    """Master bookkeeping is inconsistent (a programming defect)"""


# =============================================================================
# Events
# =============================================================================


@dataclass
class RegisterEvent:
    uav_id: str
    position: Any
    battery: Any
    capabilities: List[str] = field(default_factory=list)
    connection: Any = None
    msg_id: Any = None


@dataclass
class HeartbeatEvent:
    uav_id: str
    position: Any = None
    velocity: Any = None
    battery: Optional[float] = None
    status: Optional[str] = None


@dataclass
class SensorDataEvent:
    uav_id: str
    payload: SensorPayload


@dataclass
class DisconnectEvent:
    uav_id: str
    reason: str = "client_disconnect"
    # Connection the disconnect came from; stale connections are ignored
    connection: Any = None


@dataclass
class CommandEvent:
    pending: "PendingCommand"


@dataclass
class CommandResponseEvent:
    uav_id: str
    command_id: str
    success: bool
    result: Optional[dict] = None
    error: Optional[str] = None


@dataclass
class SweepTick:
    pass


@dataclass
class RotationTick:
    pass


@dataclass
class _Stop:
    pass


# =============================================================================
# Commands
# =============================================================================


@dataclass
class CommandResult:
    success: bool
    command_id: str
    uav_id: str
    command: str
    result: Optional[dict] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "commandId": self.command_id,
            "uavId": self.uav_id,
            "command": self.command,
            "result": self.result,
            "error": self.error,
        }


class PendingCommand:
    """Command waiting for its UAV; resolves exactly once"""

    def __init__(self, command_id: str, uav_id: str, command: str, params: dict):
        self.command_id = command_id
        self.uav_id = uav_id
        self.command = command
        self.params = params
        self.deadline: Optional[float] = None
        self.result: Optional[CommandResult] = None
        self._done = threading.Event()
        self._lock = threading.Lock()

    def resolve(self, success: bool, result: dict = None, error: str = None) -> bool:
        with self._lock:
            if self.result is not None:
                return False
            self.result = CommandResult(
                success=success,
                command_id=self.command_id,
                uav_id=self.uav_id,
                command=self.command,
                result=result,
                error=error,
            )
        self._done.set()
        return True

    def fail(self, reason: str) -> bool:
        return self.resolve(False, error=reason)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def done(self) -> bool:
        return self._done.is_set()


class PeriodicTimer:
    """Posts an event onto the coordinator queue every `interval` seconds"""

    def __init__(self, interval: float, fire: Callable[[], None], name: str):
        self.interval = interval
        self.fire = fire
        self.name = name
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stopped.wait(self.interval):
            self.fire()

    def stop(self):
        self._stopped.set()
        if self._thread:
            self._thread.join()


# =============================================================================
# Coordinator
# =============================================================================


class Coordinator:
    """
    Sequential event processor for the coordination plane and link pipeline
    """

    def __init__(
        self,
        config: dict,
        registry: FleetRegistry,
        arbiter: ModeArbiter,
        estimator: LinkQualityEstimator,
        elector: MasterElector,
        transmission_filter: TransmissionFilter,
        environment: Optional[EnvironmentSimulator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.registry = registry
        self.arbiter = arbiter
        self.estimator = estimator
        self.elector = elector
        self.transmission_filter = transmission_filter
        self.environment = environment
        self.clock = clock

        fleet_config = section(config, "fleet")
        self.sweep_interval = float(fleet_config["sweep_interval_sec"])
        self.command_timeout = float(fleet_config["command_timeout_sec"])
        self.base_station_position = np.asarray(
            section(config, "base_station")["position"], dtype=float
        )[:2]

        self.events: "queue.Queue" = queue.Queue()
        self.pending_commands: Dict[str, PendingCommand] = {}
        self._command_ids = itertools.count(1)

        self.observers: List[Callable[[str, dict], None]] = []
        self.package_sinks: List[Callable[[TransmissionPackage], None]] = []

        self.started_at = clock()
        self.latest_state: FleetState = registry.snapshot()
        self.events_processed = 0

        self.running = False
        self.worker: Optional[threading.Thread] = None
        self.timers: List[PeriodicTimer] = []

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def add_observer(self, callback: Callable[[str, dict], None]):
        """Register a broadcast observer `callback(event_name, data)`"""
        self.observers.append(callback)

    def add_package_sink(self, sink: Callable[[TransmissionPackage], None]):
        """Register the consumer of filtered transmission packages"""
        self.package_sinks.append(sink)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self):
        """Start the worker and the sweep/rotation timers"""
        self.running = True
        self.worker = threading.Thread(
            target=self._run, name="coordinator", daemon=True
        )
        self.worker.start()

        self.timers = [
            PeriodicTimer(
                self.sweep_interval, lambda: self.submit(SweepTick()), "sweep-timer"
            ),
            PeriodicTimer(
                self.elector.rotation_interval,
                lambda: self.submit(RotationTick()),
                "rotation-timer",
            ),
        ]
        for timer in self.timers:
            timer.start()
        logger.info("Coordinator started")

    def stop(self):
        """Stop timers, drain the queue and fail outstanding commands"""
        for timer in self.timers:
            timer.stop()
        self.timers = []

        if self.worker:
            self.events.put(_Stop())
            self.worker.join()
            self.worker = None
        self.running = False

        for pending in list(self.pending_commands.values()):
            pending.fail("shutdown")
        self.pending_commands.clear()
        logger.info("Coordinator stopped")

    def submit(self, event):
        """Enqueue an event; the only entry point for state changes"""
        self.events.put(event)

    def _run(self):
        while True:
            event = self.events.get()
            if isinstance(event, _Stop):
                break
            self._process(event)

    def process_pending(self) -> int:
        """Drain queued events on the calling thread (no worker running)"""
        processed = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return processed
            if isinstance(event, _Stop):
                continue
            self._process(event)
            processed += 1

    def _process(self, event):
        handler = self._handlers().get(type(event))
        if handler is None:
            logger.warning(f"Unknown event type: {type(event).__name__}")
            return
        try:
            handler(event)
            self.check_invariants()
        except Exception:
            logger.exception(f"Error handling {type(event).__name__}")
        finally:
            self.events_processed += 1
            self.latest_state = self.registry.snapshot()

    def _handlers(self) -> Dict[type, Callable]:
        return {
            RegisterEvent: self._on_register,
            HeartbeatEvent: self._on_heartbeat,
            SensorDataEvent: self._on_sensor_data,
            DisconnectEvent: self._on_disconnect,
            CommandEvent: self._on_command,
            CommandResponseEvent: self._on_command_response,
            SweepTick: self._on_sweep,
            RotationTick: self._on_rotation,
        }

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_register(self, event: RegisterEvent):
        previous = self.registry.get(event.uav_id) if isinstance(event.uav_id, str) else None
        previous_connection = previous.connection if previous is not None else None
        try:
            session = self.registry.register(
                event.uav_id,
                event.position,
                event.battery,
                capabilities=event.capabilities,
                connection=event.connection,
            )
        except RegistrationError as e:
            logger.warning(f"Rejected registration for {event.uav_id!r}: {e}")
            if event.connection is not None:
                event.connection.send(error(event.msg_id, INVALID_PARAMS, str(e)))
            return

        if previous is not None and previous_connection is not event.connection:
            self._fail_commands_for(session.uav_id, "reconnected")

        # A replaced session starts arbitration from scratch
        self.arbiter.forget(session.uav_id)
        self._run_link_pipeline(session.uav_id, broadcast=False)

        if self.registry.current_master_id is None:
            self._elect("first_registration", None)

        if event.connection is not None:
            event.connection.send(
                result(
                    event.msg_id,
                    {
                        "status": "registered",
                        "assigned_id": session.uav_id,
                        "current_master_id": self.registry.current_master_id,
                    },
                )
            )

        self._broadcast(
            "uav_connected",
            {
                "uavId": session.uav_id,
                "position": session.position.tolist(),
                "battery": session.battery,
                "isMaster": session.is_master,
                "currentMasterId": self.registry.current_master_id,
            },
        )

    def _on_heartbeat(self, event: HeartbeatEvent):
        session = self.registry.heartbeat(
            event.uav_id,
            position=event.position,
            velocity=event.velocity,
            battery=event.battery,
            status=event.status,
        )
        if session is None:
            return
        self._run_link_pipeline(event.uav_id, broadcast=True)

    def _run_link_pipeline(self, uav_id: str, broadcast: bool):
        session = self.registry.get(uav_id)
        if self.environment is not None:
            snapshot = self.environment.snapshot(
                session.position, self.base_station_position
            )
        else:
            snapshot = EnvironmentSnapshot()

        signal = self.estimator.estimate(
            session.position, self.base_station_position, snapshot
        )
        decision = self.arbiter.evaluate(uav_id, signal)
        self.registry.update_link(uav_id, decision)

        if not broadcast:
            return

        master_id = self.registry.current_master_id
        self._broadcast(
            "uav_status_update",
            {
                "uavId": uav_id,
                "position": session.position.tolist(),
                "velocity": session.velocity.tolist(),
                "battery": session.battery,
                "status": session.status,
                "isacMode": decision.mode.value,
                "signalStrength": decision.signal_strength,
                "dataRate": decision.data_rate,
                "isMaster": session.is_master,
                "currentMasterId": master_id,
            },
        )
        if decision.switched:
            self._broadcast("isac_mode_changed", decision.to_dict())

    def _on_sensor_data(self, event: SensorDataEvent):
        session = self.registry.get(event.uav_id)
        if session is None:
            logger.warning(f"Sensor data from unknown UAV {event.uav_id}, ignoring")
            return

        package = self.transmission_filter.filter(
            event.payload, session.isac_mode, uav_id=event.uav_id, timestamp=self.clock()
        )
        for sink in self.package_sinks:
            try:
                sink(package)
            except Exception as e:
                logger.error(f"Package sink error: {e}")

        summary = package.summary()
        summary["isMaster"] = session.is_master
        self._broadcast("uav_data_update", summary)

    def _on_disconnect(self, event: DisconnectEvent):
        session = self.registry.get(event.uav_id)
        if session is None:
            return
        if event.connection is not None and session.connection is not event.connection:
            logger.debug(f"Ignoring disconnect of stale connection for UAV {event.uav_id}")
            return
        self._remove_sessions([event.uav_id], event.reason)

    def _on_sweep(self, event: SweepTick):
        now = self.clock()

        for command_id, pending in list(self.pending_commands.items()):
            if pending.deadline is not None and now >= pending.deadline:
                del self.pending_commands[command_id]
                if pending.fail("timeout"):
                    logger.warning(
                        f"Command {pending.command} to UAV {pending.uav_id} timed out"
                    )

        if self.environment is not None:
            self.environment.update(now - self.started_at)

        previous_master = self.registry.current_master_id
        expired = self.registry.sweep()
        if expired:
            self._after_removal(expired, "timeout", previous_master)

    def _on_rotation(self, event: RotationTick):
        self._elect("rotation", self.registry.current_master_id)

    def _remove_sessions(self, uav_ids: List[str], reason: str):
        previous_master = self.registry.current_master_id
        for uav_id in uav_ids:
            self.registry.remove(uav_id)
        self._after_removal(uav_ids, reason, previous_master)

    def _after_removal(self, uav_ids: List[str], reason: str, previous_master: Optional[str]):
        """Cleanup shared by sweeps and explicit disconnects"""
        for uav_id in uav_ids:
            self.arbiter.forget(uav_id)
            self._fail_commands_for(uav_id, "disconnected")

        if self.registry.current_master_id is None:
            self._elect(f"master_lost:{reason}", previous_master)

        for uav_id in uav_ids:
            logger.info(f"UAV {uav_id} disconnected ({reason})")
            self._broadcast(
                "uav_disconnected",
                {
                    "uavId": uav_id,
                    "reason": reason,
                    "currentMasterId": self.registry.current_master_id,
                },
            )

    def _elect(self, reason: str, previous: Optional[str]):
        """Run an election; `previous` is the master before the triggering change"""
        master_id = self.elector.elect(self.registry, reason=reason)
        if master_id != previous:
            if master_id is None:
                logger.info(f"Master {previous} lost ({reason}), fleet is empty")
            self._broadcast(
                "master_changed",
                {
                    "previousMasterId": previous,
                    "currentMasterId": master_id,
                    "reason": reason,
                },
            )

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def dispatch_command(
        self, uav_id: str, command: str, params: Optional[dict] = None
    ) -> PendingCommand:
        """Queue a command without waiting; returns its PendingCommand"""
        command_id = f"cmd_{next(self._command_ids)}_{int(self.clock() * 1000)}"
        pending = PendingCommand(command_id, uav_id, command, dict(params or {}))
        self.submit(CommandEvent(pending))
        return pending

    def send_command(
        self,
        uav_id: str,
        command: str,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Dispatch a command and wait for its outcome (caller's thread only)"""
        timeout = self.command_timeout if timeout is None else timeout
        pending = self.dispatch_command(uav_id, command, params)
        if not pending.wait(timeout):
            pending.fail("timeout")
        return pending.result

    def _on_command(self, event: CommandEvent):
        pending = event.pending
        if pending.done:
            logger.debug(f"Dropping released command {pending.command_id}")
            return
        if pending.command not in C.UAV_COMMANDS:
            pending.fail(f"unknown command: {pending.command}")
            return

        session = self.registry.get(pending.uav_id)
        if session is None or session.connection is None:
            pending.fail("not connected")
            return

        pending.deadline = self.clock() + self.command_timeout
        self.pending_commands[pending.command_id] = pending
        sent = session.connection.send(
            request(pending.command, pending.params, pending.command_id)
        )
        if not sent:
            del self.pending_commands[pending.command_id]
            pending.fail("send failed")
            return
        logger.debug(f"Sent {pending.command} to UAV {pending.uav_id}")

    def _on_command_response(self, event: CommandResponseEvent):
        pending = self.pending_commands.get(event.command_id)
        if pending is None or pending.uav_id != event.uav_id:
            logger.debug(f"Late or unknown command response {event.command_id}")
            return

        del self.pending_commands[event.command_id]
        if pending.resolve(event.success, result=event.result, error=event.error):
            self._broadcast("command_response", pending.result.to_dict())

    def _fail_commands_for(self, uav_id: str, reason: str):
        for command_id, pending in list(self.pending_commands.items()):
            if pending.uav_id == uav_id:
                del self.pending_commands[command_id]
                pending.fail(reason)

    # -------------------------------------------------------------------------
    # Observers and invariants
    # -------------------------------------------------------------------------

    def _broadcast(self, event_name: str, data: dict):
        """Fire-and-forget fan-out; observer errors never reach the loop"""
        for callback in self.observers:
            try:
                callback(event_name, data)
            except Exception as e:
                logger.error(f"Observer error on {event_name}: {e}")

    def check_invariants(self):
        """Raise FleetInvariantError if master bookkeeping is inconsistent"""
        sessions = self.registry.sessions
        master_id = self.registry.current_master_id
        flagged = [uid for uid, s in sessions.items() if s.is_master]

        if not sessions:
            if master_id is not None or flagged:
                raise FleetInvariantError(f"Empty fleet has master {master_id}")
            return

        if master_id is None or master_id not in sessions:
            raise FleetInvariantError(f"Master {master_id} is not a connected session")
        if not sessions[master_id].is_connected:
            raise FleetInvariantError(f"Master {master_id} is disconnected")
        if flagged != [master_id]:
            raise FleetInvariantError(f"Master flags {flagged} != [{master_id}]")

    def get_status(self) -> dict:
        """Latest fully-applied fleet state, safe to call from any thread"""
        state = self.latest_state
        status = state.to_dict()
        status["pendingCommands"] = len(self.pending_commands)
        status["eventsProcessed"] = self.events_processed
        return status
