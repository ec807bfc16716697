"""
Database connection management for the WeddingBell notification service.

This module provides:
- MongoDB connection management with motor
- Redis connection management with redis.asyncio (queue, pub/sub, cache)
- Health checking for both backends
- Index creation for the notification collections
- Graceful shutdown
"""

import asyncio
import time
from typing import Any, Dict, Optional

import pymongo
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from weddingbell.app.core.exceptions import ErrorCode, raise_database_error
from weddingbell.app.utils.decorators import retry_on_failure
from weddingbell.app.utils.logging import DatabaseLogger, get_logger, performance_context
from weddingbell.config.settings import DatabaseSettings, RedisSettings

logger = get_logger(__name__)
database_logger = DatabaseLogger()


class MongoDBManager:
    """
    MongoDB connection and lifecycle management.

    Provides the motor database handle used by every MongoDB repository.
    """

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.is_connected: bool = False
        self._connection_lock = asyncio.Lock()

    @retry_on_failure(
        max_attempts=3,
        delay=1.0,
        retryable_errors=(ConnectionFailure, ServerSelectionTimeoutError)
    )
    async def _ping(self) -> None:
        await self.client.admin.command("ping")

    async def connect(self) -> None:
        """
        Establish connection to MongoDB.

        Raises:
            DatabaseError: If connection fails
        """
        if self.is_connected:
            return

        async with self._connection_lock:
            if self.is_connected:
                return

            try:
                with performance_context("mongodb_connection"):
                    self.client = AsyncIOMotorClient(
                        self.settings.mongodb_url,
                        serverSelectionTimeoutMS=self.settings.server_selection_timeout_ms,
                        connectTimeoutMS=5000,
                        maxPoolSize=self.settings.max_pool_size,
                        retryWrites=True,
                        retryReads=True
                    )
                    self.database = self.client[self.settings.mongodb_database]

                    await self._ping()
                    self.is_connected = True

                    database_logger.connection_established(
                        database_type="mongodb",
                        database_name=self.settings.mongodb_database
                    )
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                database_logger.connection_failed("mongodb", str(e))
                raise_database_error(
                    f"Failed to connect to MongoDB: {e}",
                    database_type="mongodb",
                    operation="connect",
                    error_code=ErrorCode.DATABASE_CONNECTION_ERROR
                )

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client and self.is_connected:
            self.client.close()
            self.is_connected = False
            logger.info("MongoDB connection closed")

    def get_database(self) -> AsyncIOMotorDatabase:
        if self.database is None:
            raise_database_error(
                "Database not connected",
                database_type="mongodb",
                operation="get_database",
                error_code=ErrorCode.DATABASE_CONNECTION_ERROR
            )
        return self.database

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform MongoDB health check.

        Returns:
            Health status information
        """
        if not self.is_connected or not self.client:
            return {"status": "disconnected", "error": "Not connected to MongoDB"}

        try:
            start_time = time.time()
            await self.client.admin.command("ping")
            latency = (time.time() - start_time) * 1000
            return {"status": "healthy", "latency_ms": round(latency, 2)}
        except pymongo.errors.PyMongoError as e:
            return {"status": "unhealthy", "error": str(e)}


class RedisManager:
    """
    Redis connection shared by the queue backend, pub/sub bus and cache.
    """

    def __init__(self, settings: RedisSettings):
        self.settings = settings
        self.client: Optional[aioredis.Redis] = None
        self.is_connected: bool = False
        self._connection_lock = asyncio.Lock()

    @retry_on_failure(
        max_attempts=3,
        delay=1.0,
        retryable_errors=(RedisConnectionError, RedisTimeoutError)
    )
    async def _ping(self) -> None:
        await self.client.ping()

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        Raises:
            DatabaseError: If connection fails
        """
        if self.is_connected:
            return

        async with self._connection_lock:
            if self.is_connected:
                return

            try:
                with performance_context("redis_connection"):
                    self.client = aioredis.from_url(self.settings.url, decode_responses=True)
                    await self._ping()
                    self.is_connected = True
                    database_logger.connection_established(
                        database_type="redis",
                        database_name=self.settings.url.rsplit("@", 1)[-1]
                    )
            except (RedisConnectionError, RedisTimeoutError) as e:
                database_logger.connection_failed("redis", str(e))
                raise_database_error(
                    f"Failed to connect to Redis: {e}",
                    database_type="redis",
                    operation="connect",
                    error_code=ErrorCode.DATABASE_CONNECTION_ERROR
                )

    def get_client(self) -> aioredis.Redis:
        if self.client is None:
            raise_database_error(
                "Redis not connected",
                database_type="redis",
                operation="get_client",
                error_code=ErrorCode.DATABASE_CONNECTION_ERROR
            )
        return self.client

    def key(self, *parts: str) -> str:
        """Build a namespaced key, e.g. ``weddingbell:queue:critical``."""
        return ":".join((self.settings.key_prefix,) + parts)

    async def disconnect(self) -> None:
        if self.client and self.is_connected:
            await self.client.aclose()
            self.is_connected = False
            logger.info("Redis connection closed")

    async def health_check(self) -> Dict[str, Any]:
        if not self.is_connected or not self.client:
            return {"status": "disconnected", "error": "Not connected to Redis"}
        try:
            start_time = time.time()
            await self.client.ping()
            return {"status": "healthy", "latency_ms": round((time.time() - start_time) * 1000, 2)}
        except (RedisConnectionError, RedisTimeoutError) as e:
            return {"status": "unhealthy", "error": str(e)}
