import paho.mqtt.client as mqtt
import json
import logging
from typing import Optional, Callable

from models import NavigationStatus

logger = logging.getLogger(__name__)

CLIENT_TOPIC_PREFIX = "campus/clients"
SERVICE_TOPIC_PREFIX = "campus/services/navigation"

# topic suffix -> handler attribute
EVENT_TOPICS = {
    "scan": "on_scan",
    "motion": "on_motion",
    "orientation": "on_orientation",
    "gps": "on_gps",
    "destination": "on_destination",
    "reset": "on_reset",
    "heartbeat": "on_heartbeat",
}


def status_topic(session_id: str) -> str:
    return f"{SERVICE_TOPIC_PREFIX}/{session_id}"


class MQTTNavigationHandler:
    """
    Handles MQTT communication for the Navigation Service.
    - Receives device events (checkpoint scans, sensor samples, destination
      choices) on campus/clients/<session_id>/<event>
    - Publishes navigation status to campus/services/navigation/<session_id>
    """

    def __init__(self, client_broker: str, client_port: int):
        self.client_broker = client_broker
        self.client_port = client_port

        self.client_mqtt = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="campus_navigation_service")
        self.client_mqtt.on_connect = self._on_client_connect
        self.client_mqtt.on_message = self._on_client_message
        self.client_mqtt.on_disconnect = self._on_client_disconnect

        # Callbacks for handling events: (session_id, payload) -> None
        self.on_scan: Optional[Callable] = None
        self.on_motion: Optional[Callable] = None
        self.on_orientation: Optional[Callable] = None
        self.on_gps: Optional[Callable] = None
        self.on_destination: Optional[Callable] = None
        self.on_reset: Optional[Callable] = None
        self.on_heartbeat: Optional[Callable] = None

    def _on_client_connect(self, client, userdata, flags, reason_code, properties):
        """Handler for connection to client broker"""
        if reason_code.is_failure:
            logger.error(f"[MQTT] Connection failed: {reason_code}")
            return
        logger.info(f"[MQTT] Connected to broker at {self.client_broker}:{self.client_port}")
        for event in EVENT_TOPICS:
            topic = f"{CLIENT_TOPIC_PREFIX}/+/{event}"
            client.subscribe(topic)
            logger.info(f"[MQTT] Subscribed to topic: {topic}")

    def _on_client_disconnect(self, client, userdata, flags, reason_code, properties):
        """Handler for disconnection from client broker"""
        if reason_code.is_failure:
            logger.warning(f"[MQTT] Unexpected disconnection: {reason_code}")

    def _on_client_message(self, client, userdata, msg):
        """Route a device event to the matching callback"""
        try:
            parts = msg.topic.split("/")
            if len(parts) != 4:
                logger.debug(f"[MQTT] Ignoring topic {msg.topic}")
                return
            session_id, event = parts[2], parts[3]

            attr = EVENT_TOPICS.get(event)
            if attr is None:
                logger.debug(f"[MQTT] Unknown event {event} on {msg.topic}")
                return

            raw = msg.payload.decode() if msg.payload else ""
            if event == "scan" and raw and not raw.lstrip().startswith("{"):
                # Bare QR payload text
                payload = {"code": raw}
            else:
                payload = json.loads(raw) if raw else {}

            if event not in ("motion", "orientation"):
                logger.info(f"[MQTT] Received {event} from session: {session_id}")

            callback = getattr(self, attr)
            if callback:
                callback(session_id, payload)

        except json.JSONDecodeError as e:
            logger.error(f"[MQTT] JSON decode error on {msg.topic}: {e}")
        except Exception as e:
            logger.error(f"[MQTT] Error processing message on {msg.topic}: {e}")

    def publish_status(self, status: NavigationStatus):
        """Publish navigation status to the walker's session topic"""
        topic = status_topic(status.session_id)
        result = self.client_mqtt.publish(topic, status.model_dump_json(by_alias=True), qos=1)

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"[MQTT] Published status to topic: {topic}")
        else:
            logger.error(f"[MQTT] Failed to publish status for {status.session_id}")

    def start(self):
        """Start MQTT client and connect to broker"""
        try:
            self.client_mqtt.connect(self.client_broker, self.client_port, keepalive=60)
            self.client_mqtt.loop_start()
            logger.info("Navigation Service MQTT Handler started")
        except Exception as e:
            logger.error(f"Failed to start MQTT handler: {e}")
            raise

    def stop(self):
        """Stop MQTT client"""
        self.client_mqtt.loop_stop()
        self.client_mqtt.disconnect()
        logger.info("Navigation Service MQTT Handler stopped")
