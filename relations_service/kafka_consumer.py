"""
Kafka consumer feeding relation changes from other instances into the notifier
"""
from aiokafka import AIOKafkaConsumer
from typing import Optional
import json
import asyncio
import logging

from .config import settings
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)


class KafkaConsumerManager:
    """Manage Kafka consumer for relation change events"""

    def __init__(self, notifier: ChangeNotifier):
        self.notifier = notifier
        self.consumer: Optional[AIOKafkaConsumer] = None
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Start Kafka consumer"""
        if not settings.KAFKA_ENABLED:
            logger.warning("Kafka is disabled")
            return

        try:
            # Every instance needs every change, so each gets its own group
            self.consumer = AIOKafkaConsumer(
                settings.KAFKA_TOPIC_RELATION_CHANGES,
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                group_id=f"{settings.KAFKA_CONSUMER_GROUP}-{self.notifier.instance_id}",
                value_deserializer=lambda m: json.loads(m.decode("utf-8")),
                auto_offset_reset="latest",
                enable_auto_commit=True,
            )
            await self.consumer.start()
            logger.info(f"Kafka consumer started on '{settings.KAFKA_TOPIC_RELATION_CHANGES}'")

            self.running = True
            self.task = asyncio.create_task(self._consume_messages())

        except Exception as e:
            logger.error(f"Failed to start Kafka consumer: {e}")
            self.consumer = None

    async def stop(self):
        """Stop Kafka consumer"""
        self.running = False

        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        if self.consumer:
            await self.consumer.stop()
            logger.info("Kafka consumer stopped")

    async def _consume_messages(self):
        """Consume and process messages from Kafka"""
        logger.info("Started consuming relation changes")

        try:
            async for message in self.consumer:
                if not self.running:
                    break

                try:
                    await self._process_message(message)
                except Exception as e:
                    logger.error(f"Error processing message: {e}")

        except asyncio.CancelledError:
            logger.info("Kafka consumer task cancelled")
        except Exception as e:
            logger.error(f"Error in message consumption loop: {e}")

    async def _process_message(self, message):
        """Hand one change event to the notifier"""
        value = message.value
        if not isinstance(value, dict):
            logger.error(f"Invalid relation change payload on '{message.topic}'")
            return

        delivered = await self.notifier.receive(value)
        logger.debug(
            f"Relation change {value.get('collection')}:{value.get('event_type')} "
            f"delivered to {delivered} subscribers"
        )
