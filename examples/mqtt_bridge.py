import asyncio
import json
import re
from typing import Optional, Any
import hwicontrol
from hwicontrol import HwiControl, HwiCircuit, HwiConnectionError, CommMode, run_with_keyboard_interrupt
import aiomqtt
import yaml
import logging
from logging.handlers import RotatingFileHandler


class Const:

    # MQTT settings
    MQTT_RECONNECT_MIN_DELAY = 1
    MQTT_RECONNECT_MAX_DELAY = 10
    MQTT_SERVICE_PREFIX = "hwicontrol-python"

    # Logging
    LOG_FILE = 'mqtt.log'
    DEBUG_FILE = 'mqtt.debug.log'
    LOG_MAX_BYTES = 5 * 1024 * 1024  # 5MB
    LOG_BACKUP_COUNT = 5


class HwiMQTTBridge:
    """Bridge between a Homeworks Interactive panel and MQTT/Home Assistant.

    Every configured circuit becomes a Home Assistant light via MQTT
    auto-discovery. Commands from Home Assistant become FADEDIM commands, and
    level changes reported by the panel (including keypad presses) are
    published back as state.
    """

    # ================================
    #          INIT & RUN
    # ================================

    def __init__(self, config_path: str = "examples/config.yaml") -> None:
        self.config: dict[str, Any]
        with open(config_path) as f:
            self.config = yaml.safe_load(f) or {}

        self.logger: logging.Logger
        self.discovery_prefix: str
        self.name: str
        self.hwi: Optional[HwiControl] = None
        self.mqttc: Optional[aiomqtt.Client] = None
        self.mqtt_task: Optional[asyncio.Task] = None
        self.setup_complete: bool = False
        self.topic_object: dict[str, HwiCircuit] = {}  # Map of topics to circuits

        self.global_config: dict[str, Any] = {
            "origin": {
                "name": "hwicontrol-python",
                "sw": hwicontrol.__version__,
            }
        }

    async def run(self) -> None:
        self.setup_config()
        self.setup_logging()
        self.logger.info("==================================== Starting HwiMQTTBridge ====================================")
        self.setup_hwi()

        try:
            await self.hwi.start()
        except HwiConnectionError as e:
            self.logger.fatal(f"Aborting - HWI panel cannot be reached: {e}")
            return

        # Start MQTT message handling task
        self.mqtt_task = asyncio.create_task(self._mqtt_message_handler())
        await self.mqtt_task

    async def stop(self) -> None:
        """Clean shutdown of the bridge"""
        if self.hwi:
            await self.hwi.stop()
        if self.mqtt_task:
            self.mqtt_task.cancel()
            try:
                await self.mqtt_task
            except asyncio.CancelledError:
                pass

    # ================================
    #            CONFIG
    # ================================

    def setup_config(self) -> None:
        required_sections = ['homeassistant', 'mqtt', 'hwicontrol']
        missing = [s for s in required_sections if s not in self.config]
        if missing:
            raise ValueError(f"Missing required config sections: {', '.join(missing)}")

        mqtt_required = ['host', 'port', 'user', 'password', 'keepalive']
        missing = [f for f in mqtt_required if f not in self.config['mqtt']]
        if missing:
            raise ValueError(f"Missing MQTT config fields: {', '.join(missing)}")

        hwi = self.config['hwicontrol']
        hwi_required = ['name', 'circuits_file']
        missing = [f for f in hwi_required if f not in hwi]
        if missing:
            raise ValueError(f"Missing hwicontrol config fields: {', '.join(missing)}")

        if not re.match(r'^[A-Za-z0-9]+$', hwi['name']):
            raise ValueError(f"Invalid name format in hwicontrol config: {hwi['name']}. Use only letters and numbers.")

        comm_mode = hwi.get('comm_mode', CommMode.TELNET.value)
        if comm_mode not in [m.value for m in CommMode]:
            raise ValueError(f"Invalid comm_mode in hwicontrol config: {comm_mode}")
        if comm_mode == CommMode.TELNET.value and 'host' not in hwi:
            raise ValueError("hwicontrol config needs a host in telnet mode")

        self.name = hwi['name']
        self.discovery_prefix = self.config['homeassistant'].get('discovery_prefix', 'homeassistant')

    def setup_logging(self) -> None:
        """Configure logging with both file and console handlers."""
        self.logger = logging.getLogger('HwiMQTTBridge')
        self.logger.setLevel(logging.DEBUG)

        # File handler
        file_handler = RotatingFileHandler(
            Const.LOG_FILE,
            maxBytes=Const.LOG_MAX_BYTES,
            backupCount=Const.LOG_BACKUP_COUNT
        )
        # Exclude debug messages
        file_handler.addFilter(lambda record: record.levelno != logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(fmt="%(asctime)s\t%(levelname)s\t%(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
        self.logger.addHandler(file_handler)

        # Debug only handler
        debug_handler = logging.FileHandler(Const.DEBUG_FILE)
        debug_handler.setLevel(logging.DEBUG)
        debug_handler.setFormatter(logging.Formatter(fmt="%(asctime)s\t%(levelname)s\t%(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
        self.logger.addHandler(debug_handler)

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s.%(msecs)03d %(levelname)s: %(message)s', datefmt='%H:%M:%S'
        ))
        self.logger.addHandler(console_handler)

    # ================================
    #              HWI
    # ================================

    def setup_hwi(self) -> None:
        hwi = self.config['hwicontrol']
        self.hwi = HwiControl(
            host=hwi.get('host'),
            port=hwi.get('port', 23),
            comm_mode=hwi.get('comm_mode', CommMode.TELNET.value),
            min_cmd_delay=hwi.get('min_cmd_delay', 0.2),
            disabled=hwi.get('disabled', False),
            reconnect=hwi.get('reconnect', False),
            ipc_channel=hwi.get('ipc_channel', 'hwicontrol'),
            logger=self.logger,
        )
        self.hwi.load_circuits(hwi['circuits_file'])
        self.hwi.light_change = self._hwi_light_change

    # ================================
    #              MQTT
    # ================================

    async def _mqtt_message_handler(self) -> None:
        """Handle incoming MQTT messages with automatic reconnection per aiomqtt docs."""
        interval = Const.MQTT_RECONNECT_MIN_DELAY
        mqtt_config = self.config["mqtt"]
        availability_topic = f"{Const.MQTT_SERVICE_PREFIX}/{self.name}/availability"

        while True:
            try:
                client = aiomqtt.Client(
                    hostname=mqtt_config["host"],
                    port=mqtt_config["port"],
                    username=mqtt_config["user"],
                    password=mqtt_config["password"],
                    keepalive=mqtt_config["keepalive"],
                    will=aiomqtt.Will(topic=availability_topic, payload="offline", retain=True)
                )

                async with client:
                    self.mqttc = client
                    await client.subscribe(f"{self.discovery_prefix}/light/{self.name}/#")
                    await client.publish(availability_topic, "online", retain=True)
                    self.logger.info("Successfully connected to MQTT broker")

                    await self.setup_lights()
                    self.setup_complete = True
                    interval = Const.MQTT_RECONNECT_MIN_DELAY

                    async for message in client.messages:
                        await self._mqtt_on_message(message)

            except asyncio.CancelledError:
                self.logger.info("MQTT message handler cancelled")
                break
            except aiomqtt.MqttError as e:
                self.setup_complete = False
                self.mqttc = None
                self.logger.warning(f"MQTT connection lost: {e}")
                self.logger.info(f"Reconnecting in {interval} seconds...")
                await asyncio.sleep(interval)
                interval = min(interval * 2, Const.MQTT_RECONNECT_MAX_DELAY)

    async def _mqtt_on_message(self, msg: aiomqtt.Message) -> None:
        """Handle incoming MQTT messages."""
        topic_str = str(msg.topic)

        # Only set commands are acted on
        if topic_str.split('/')[-1] != "set":
            return

        base_topic = topic_str.rsplit('/', 1)[0]
        circuit = self.topic_object.get(base_topic)
        if not circuit:
            self.logger.debug(f"No matching circuit found for {base_topic}")
            return
        if not self.setup_complete:
            self.logger.debug(f"Setup not complete, ignoring message {msg.topic}")
            return

        try:
            payload = json.loads(msg.payload.decode('UTF-8')) if msg.payload else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.logger.warning(f"Ignoring malformed payload on {topic_str}: {e}")
            return
        if not isinstance(payload, dict):
            self.logger.warning(f"Ignoring non-object payload on {topic_str}")
            return

        try:
            await self._mqtt_light_change(circuit, payload)
        except (TypeError, ValueError) as e:
            self.logger.warning(f"Ignoring invalid command for {circuit.name}: {payload} ({e})")

    async def _publish_config(self, topic: str, config: dict, circuit: HwiCircuit) -> None:
        self.topic_object[topic] = circuit
        await self.mqttc.publish(f"{topic}/config", json.dumps(config), retain=True)

    async def _publish_state(self, topic: str, state: dict, retain: bool = False) -> None:
        if self.mqttc is None:
            return
        await self.mqttc.publish(f"{topic}/state", json.dumps(state), retain=retain)
        self.logger.debug(f"MQTT sent - {topic}/state: {state}")

    # ================================
    #           LIGHTS
    # ================================

    def _topic_for_circuit(self, circuit: HwiCircuit) -> str:
        return f"{self.discovery_prefix}/light/{self.name}/{circuit.std_address.replace(':', '_')}"

    async def setup_lights(self) -> None:
        """Publish every circuit for Home Assistant auto-discovery."""
        for circuit in self.hwi.circuits.values():
            mqtt_topic = self._topic_for_circuit(circuit)
            config_dict = self.global_config | {
                "name": circuit.name,
                "unique_id": f"{self.name}_{circuit.std_address.replace(':', '_')}",
                "schema": "json",
                "command_topic": f"{mqtt_topic}/set",
                "state_topic": f"{mqtt_topic}/state",
                "availability_topic": f"{Const.MQTT_SERVICE_PREFIX}/{self.name}/availability",
                "effect": False,
                "retain": False,
                "brightness": circuit.dimmable,
                "supported_color_modes": ["brightness"] if circuit.dimmable else ["onoff"],
            }
            if circuit.room:
                config_dict["suggested_area"] = circuit.room
            await self._publish_config(mqtt_topic, config_dict, circuit)
            await self._publish_state(mqtt_topic, self._state_for_circuit(circuit))

    @staticmethod
    def level_to_brightness(level: int) -> int:
        return round(level * 255 / 100)

    @staticmethod
    def brightness_to_level(brightness: int) -> int:
        return max(0, min(100, round(brightness * 100 / 255)))

    def _state_for_circuit(self, circuit: HwiCircuit) -> dict[str, Any]:
        state: dict[str, Any] = {"state": "ON" if circuit.level > 0 else "OFF"}
        if circuit.dimmable and circuit.level > 0:
            state["brightness"] = self.level_to_brightness(circuit.level)
        return state

    async def _mqtt_light_change(self, circuit: HwiCircuit, payload: dict[str, Any]) -> None:
        state: Optional[str] = payload.get("state", None)
        brightness: Optional[int] = payload.get("brightness", None)

        if brightness is not None and state != "OFF":
            level = self.brightness_to_level(int(brightness))
            self.logger.info(f"Command from HA: setting {circuit.name} [{circuit.address}] to {level}")
            await circuit.set_level(level)
        elif state == "OFF":
            self.logger.info(f"Command from HA: turning {circuit.name} [{circuit.address}] OFF")
            await circuit.turn_off()
        elif state == "ON":
            self.logger.info(f"Command from HA: turning {circuit.name} [{circuit.address}] ON")
            await circuit.turn_on()

    async def _hwi_light_change(self, circuit: HwiCircuit, level: int) -> None:
        self.logger.info(f"Event from HWI: {circuit.name} [{circuit.address}] level {level}")
        await self._publish_state(self._topic_for_circuit(circuit), self._state_for_circuit(circuit))


async def _main() -> None:
    bridge = HwiMQTTBridge()
    try:
        await bridge.run()
    finally:
        await bridge.stop()


def main() -> None:
    run_with_keyboard_interrupt(_main)


if __name__ == "__main__":
    main()
