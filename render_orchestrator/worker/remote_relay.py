"""Remote companion relay over ZMQ.

Publishes every supervisor event to remote companions and accepts stop
commands from them.

Wire format
-----------

Events go out on a PUB socket as ``EVENT::<json>`` where the JSON object is
``JobEvent.to_dict()``.

Commands come in on a SUB socket as JSON objects::

    {"command": "stop", "job_id": "12345"}
    {"command": "stop_all"}
"""

import asyncio
import json
import logging
from typing import Callable, Optional

import zmq

from render_orchestrator.protocol import JobEvent
from render_orchestrator.worker.event_bus import EventBus
from render_orchestrator.worker.supervisor import ProcessSupervisor

CMD_STOP = "stop"
CMD_STOP_ALL = "stop_all"


class RemoteRelay:
    """Bridges a ProcessSupervisor to remote companions.

    Attributes:
        supervisor: Supervisor whose events are published and which receives
            remote stop commands.
        publish_address: Address the event PUB socket binds to.
        control_address: Address the command SUB socket binds to.
        pub_socket: ZMQ PUB socket for outgoing events.
        control_socket: ZMQ SUB socket for incoming commands.
        listener_task: Background task polling the control socket.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        publish_address: str = "tcp://127.0.0.1:9101",
        control_address: str = "tcp://127.0.0.1:9100",
    ):
        self.supervisor = supervisor
        self.publish_address = publish_address
        self.control_address = control_address

        self.context: Optional[zmq.Context] = None
        self.pub_socket: Optional[zmq.Socket] = None
        self.control_socket: Optional[zmq.Socket] = None

        self.listener_task: Optional[asyncio.Task] = None
        self.running = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def bus(self) -> EventBus:
        return self.supervisor.bus

    def start_publisher(self):
        """Bind the PUB socket and start forwarding bus events."""
        logging.info("Starting ZMQ event publisher...")
        if self.context is None:
            self.context = zmq.Context()
        self.pub_socket = self.context.socket(zmq.PUB)

        logging.info(f"Binding ZMQ event socket to: {self.publish_address}")
        self.pub_socket.bind(self.publish_address)
        self._unsubscribe = self.bus.subscribe(self.publish_event)
        logging.info("ZMQ event publisher initialized.")

    def publish_event(self, event: JobEvent):
        """Send one event to remote companions.

        Args:
            event: Event to publish.
        """
        if self.pub_socket is None:
            logging.error(
                f"ZMQ event socket not initialized. Dropping {event.type} for job {event.job_id}"
            )
            return
        try:
            self.pub_socket.send_string(event.to_message(), flags=zmq.NOBLOCK)
        except zmq.ZMQError as e:
            logging.error(f"Failed to publish {event.type} for job {event.job_id}: {e}")

    def handle_command(self, message: str) -> bool:
        """Dispatch one remote command to the supervisor.

        Args:
            message: JSON command string.

        Returns:
            True if the command was understood and executed.
        """
        try:
            command = json.loads(message)
        except json.JSONDecodeError as e:
            logging.warning(f"Ignoring malformed relay command {message!r}: {e}")
            return False
        if not isinstance(command, dict):
            logging.warning(f"Ignoring relay command that is not an object: {message!r}")
            return False

        name = command.get("command")
        if name == CMD_STOP:
            job_id = command.get("job_id")
            if job_id is None:
                logging.warning("Relay stop command without job_id")
                return False
            logging.info(f"Remote stop requested for job {job_id}")
            return self.supervisor.stop(str(job_id))
        if name == CMD_STOP_ALL:
            logging.info("Remote stop requested for all jobs")
            self.supervisor.stop_all()
            return True

        logging.warning(f"Unknown relay command: {name}")
        return False

    async def start_control_listener(self):
        """Poll the control socket and dispatch commands until stopped."""
        logging.info("Starting ZMQ control listener...")

        if self.context is None:
            self.context = zmq.Context()

        self.control_socket = self.context.socket(zmq.SUB)
        logging.info(f"Binding ZMQ control socket to: {self.control_address}")
        self.control_socket.bind(self.control_address)
        self.control_socket.setsockopt_string(zmq.SUBSCRIBE, "")

        self.running = True
        loop = asyncio.get_running_loop()

        def recv_msg():
            try:
                return self.control_socket.recv_string(flags=zmq.NOBLOCK)
            except zmq.Again:
                return None

        while self.running:
            msg = await loop.run_in_executor(None, recv_msg)
            if msg:
                self.handle_command(msg)

            # Polling interval
            await asyncio.sleep(0.05)

    def start_control_listener_task(self) -> asyncio.Task:
        """Start the control listener as a background task."""
        self.listener_task = asyncio.create_task(self.start_control_listener())
        logging.info("Control listener task started")
        return self.listener_task

    def stop_control_listener(self):
        if self.listener_task and not self.listener_task.done():
            self.running = False
            self.listener_task.cancel()
            logging.info("Control listener task stopped")

    def _close_sockets(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        # linger=0 so term() does not block on queued events
        if self.pub_socket:
            self.pub_socket.setsockopt(zmq.LINGER, 0)
            self.pub_socket.close()
            self.pub_socket = None
            logging.info("Event socket closed")

        if self.control_socket:
            self.control_socket.setsockopt(zmq.LINGER, 0)
            self.control_socket.close()
            self.control_socket = None
            logging.info("Control socket closed")

        if self.context:
            self.context.term()
            self.context = None
            logging.info("ZMQ context terminated")

    def cleanup(self):
        """Close sockets and context (synchronous).

        Prefer ``async_cleanup()`` inside a running loop: this version cannot
        await the listener task.
        """
        logging.info("Cleaning up ZMQ relay...")
        self.stop_control_listener()
        self._close_sockets()

    async def async_cleanup(self) -> None:
        """Cancel and await the listener, then close sockets and context."""
        logging.info("Cleaning up ZMQ relay (async)...")

        if self.listener_task and not self.listener_task.done():
            self.running = False
            self.listener_task.cancel()
            await asyncio.wait({self.listener_task}, timeout=2.0)

        self._close_sockets()

    def is_publisher_active(self) -> bool:
        return self.pub_socket is not None

    def is_control_listener_running(self) -> bool:
        return self.listener_task is not None and not self.listener_task.done()
