import json
import logging
import queue
import threading
import time

import pika

from billing import database

logger = logging.getLogger(__name__)

EXCHANGE = "ums_events"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    params = pika.URLParameters(rabbitmq_url)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        channel.basic_publish(exchange=EXCHANGE, routing_key=routing_key, body=json.dumps(event, default=str))
    finally:
        connection.close()


class JobDispatcher:
    """Hands a job/event to the message bus. Implementations must not block."""

    def dispatch(self, routing_key: str, event: dict):
        raise NotImplementedError


class RabbitJobDispatcher(JobDispatcher):
    """Queues events in memory and publishes them from a daemon thread.

    Delivery is best effort: a message that fails to publish is logged and
    dropped, it never surfaces to the code that dispatched it.
    """

    def __init__(self, rabbitmq_url: str, maxsize: int = 1000):
        self.rabbitmq_url = rabbitmq_url
        self._queue = queue.Queue(maxsize=maxsize)
        self._thread = None

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(target=self._runloop, name="event-publisher", daemon=True)
            self._thread.start()
        return self

    def dispatch(self, routing_key: str, event: dict):
        try:
            self._queue.put_nowait((routing_key, event))
        except queue.Full:
            logger.warning("Event queue full, dropping %s event", routing_key)

    def _runloop(self):
        while True:
            routing_key, event = self._queue.get()
            try:
                publish_event(self.rabbitmq_url, routing_key, event)
            except Exception:
                logger.exception("Error publishing %s event", routing_key)
            finally:
                self._queue.task_done()


class Notifier:
    """Owner notifications, fire-and-forget."""

    def __init__(self, dispatcher: JobDispatcher):
        self.dispatcher = dispatcher

    def notify(self, owner_id: str, title: str, body: str, kind: str = "info"):
        event = {
            "type": "Notification",
            "payload": {"ownerId": owner_id, "title": title, "body": body, "kind": kind},
        }
        try:
            self.dispatcher.dispatch(f"notification.events.{kind}", event)
        except Exception:
            logger.exception("Notification to owner=%s could not be dispatched", owner_id)

    def publish(self, routing_key: str, event: dict):
        try:
            self.dispatcher.dispatch(routing_key, event)
        except Exception:
            logger.exception("Event %s could not be dispatched", routing_key)


def _process_registration_event(body: dict, db, notifier: Notifier):
    """
    Called when the platform publishes StudentRegistered.
    Creates the subscriber billing state and the registration invoice.
    """
    from billing.subscribers import register_subscriber

    if body.get("type") != "StudentRegistered":
        logger.debug("Ignoring event type=%s", body.get("type"))
        return None

    payload = body.get("payload", {})
    subscriber, invoice = register_subscriber(
        db,
        notifier,
        owner_id=str(payload["student_id"]),
        tier=payload.get("registration_tier", "normal"),
        institution_id=payload.get("institution_id"),
        name=payload.get("name"),
        phone=payload.get("phone"),
    )
    logger.info("Registered subscriber=%s tier=%s invoice=%s",
                subscriber.id, subscriber.registration_tier, invoice.invoice_number)
    return invoice


def _consumer_runloop(rabbitmq_url: str, queue_name: str, notifier: Notifier):
    """
    Persistent consumer loop: connects, declares exchange & queue, binds and consumes.
    Reconnects on errors with backoff.
    """
    while True:
        conn = None
        try:
            params = pika.URLParameters(rabbitmq_url)
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)

            if queue_name:
                ch.queue_declare(queue=queue_name, durable=True, exclusive=False)
                actual_queue = queue_name
            else:
                q = ch.queue_declare(queue="", exclusive=True)
                actual_queue = q.method.queue

            ch.queue_bind(exchange=EXCHANGE, queue=actual_queue, routing_key="registration.events.#")
            logger.info("Billing consumer bound queue=%s to %s with key=registration.events.#", actual_queue, EXCHANGE)

            def callback(ch, method, properties, body):
                try:
                    payload = json.loads(body)
                    db = database.SessionLocal()
                    try:
                        _process_registration_event(payload, db, notifier)
                    finally:
                        db.close()
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                except Exception:
                    logger.exception("Error processing registration message")
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

            ch.basic_qos(prefetch_count=1)
            ch.basic_consume(queue=actual_queue, on_message_callback=callback, auto_ack=False)
            ch.start_consuming()

        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("AMQP connection error in consumer: %s", e)
        except Exception:
            logger.exception("Unexpected exception in consumer loop")
        finally:
            if conn is not None and conn.is_open:
                try:
                    conn.close()
                except pika.exceptions.AMQPError:
                    logger.debug("Consumer connection already closed")

        logger.info("Billing consumer will reconnect after backoff...")
        time.sleep(3)


_consumer = None
def start_consumer(rabbitmq_url: str, queue_name: str, notifier: Notifier):
    global _consumer
    if _consumer is None:
        _consumer = threading.Thread(target=_consumer_runloop, args=(rabbitmq_url, queue_name, notifier), daemon=True)
        _consumer.start()
