"""
Alert engine for price and technical-signal alerts.

This service periodically loads pending alerts from the database,
evaluates them against current market data (CoinGecko with Binance
fallback) and publishes a JSON trigger record to the MQTT broker on
``crypto/<coin_id>/alerts`` for every alert that fires.  Delivering the
notification to the user (email, push) is left to subscribers of that
topic.  A triggered alert is never evaluated again.
"""
import asyncio
import json
import os
import sys
import time

import paho.mqtt.client as mqtt
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from market_engine import AlertEvaluator, EvaluationReport, TriggerRecord, build_service
from market_engine.logs import get_logger
from market_engine.storage import SqlAlertStore, make_engine

logger = get_logger("alert_engine")


# --- Configuration ------------------------------------------------------------

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///alerts.db")
MQTT_BROKER = os.environ.get("MQTT_BROKER", "mosquitto")  # works inside Compose network
MQTT_PORT = int(os.environ.get("MQTT_PORT", "1883"))
CHECK_INTERVAL = int(os.environ.get("ALERT_CHECK_INTERVAL", "60"))  # seconds
TOPIC_TEMPLATE = "crypto/{coin_id}/alerts"


# --- MQTT ---------------------------------------------------------------------

class MqttTriggerPublisher:
    """Publish trigger records as JSON; one topic per coin."""

    def __init__(self, client, topic_template: str = TOPIC_TEMPLATE, qos: int = 1):
        self.client = client
        self.topic_template = topic_template
        self.qos = qos

    def topic_for(self, record: TriggerRecord) -> str:
        return self.topic_template.format(coin_id=record.coin_id)

    def __call__(self, record: TriggerRecord) -> None:
        topic = self.topic_for(record)
        self.client.publish(topic, json.dumps(record.to_dict()), qos=self.qos)
        logger.info("Published trigger for alert %s to %s", record.alert_id, topic)


def on_connect(client, userdata, flags, reason_code, properties=None):
    logger.info("Connected to MQTT broker with result %s", reason_code)


def make_mqtt_client(host: str = MQTT_BROKER, port: int = MQTT_PORT) -> mqtt.Client:
    client = mqtt.Client(
        client_id=f"alert-engine-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    client.on_connect = on_connect
    client.connect(host, port)
    client.loop_start()
    return client


# --- Core loop ----------------------------------------------------------------

def wait_for_db(engine: Engine, attempts: int = 10, delay: float = 2.0) -> bool:
    for _ in range(attempts):
        try:
            with engine.connect():
                return True
        except OperationalError as e:
            logger.warning("Waiting for DB... %s", e)
            time.sleep(delay)
    return False


async def run_once(evaluator: AlertEvaluator) -> EvaluationReport:
    evicted = evaluator.data_service.cache.evict_stale()
    if evicted:
        logger.debug("Evicted %d stale cache entries", evicted)
    report = await evaluator.evaluate()
    for coin_id, error in report.failed_coins.items():
        logger.warning("Skipped %s this round: %s", coin_id, error)
    return report


async def run_forever(evaluator: AlertEvaluator, interval: float = CHECK_INTERVAL) -> None:
    while True:
        try:
            await run_once(evaluator)
        except SQLAlchemyError:
            logger.exception("Alert check failed; retrying in %ss", interval)
        await asyncio.sleep(interval)


# --- Entrypoint ---------------------------------------------------------------

def main():
    engine = make_engine(DATABASE_URL)
    if not wait_for_db(engine):
        logger.error("Could not connect to DB")
        sys.exit(1)

    store = SqlAlertStore(engine)
    logger.info("Connecting to MQTT broker at %s:%s", MQTT_BROKER, MQTT_PORT)
    client = make_mqtt_client()
    evaluator = AlertEvaluator(build_service(), store, publisher=MqttTriggerPublisher(client))
    try:
        asyncio.run(run_forever(evaluator))
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
