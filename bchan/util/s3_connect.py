from aiobotocore.session import get_session
from aiobotocore.config import AioConfig
from contextlib import asynccontextmanager
from urllib.parse import quote
from datetime import datetime
from typing import AsyncGenerator, List, Optional, Tuple
import traceback
import logging

from bchan.errors import StorageError

# Configure logging
logger = logging.getLogger(__name__)


class S3Service:
    """
    Object storage gateway over an S3-compatible service.

    Every method takes the bucket explicitly: originals and thumbnails live in
    two buckets under identical keys.
    """

    def __init__(
            self,
            access_key: str,
            secret_key: str,
            endpoint_url: Optional[str],
            public_url: Optional[str] = None,
            region_name: str = 'ru-1',
            cache_control: str = 'max-age=3600'
    ):
        # Some S3 providers prefer no trailing slash
        if endpoint_url and endpoint_url.endswith('/'):
            endpoint_url = endpoint_url[:-1]

        self.config = {
            "aws_access_key_id": access_key,
            "aws_secret_access_key": secret_key,
            "endpoint_url": endpoint_url,
            "region_name": region_name
        }
        self.public_url = (public_url or endpoint_url or '').rstrip('/')
        self.cache_control = cache_control
        self.session = get_session()

        self.s3_config = AioConfig(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
            retries={
                'max_attempts': 3,
                'mode': 'standard'
            },
            connect_timeout=30,
            read_timeout=30
        )

    @asynccontextmanager
    async def get_client(self) -> AsyncGenerator:
        """Async context manager for an S3 client"""
        try:
            async with self.session.create_client(
                    "s3",
                    config=self.s3_config,
                    **self.config
            ) as client:
                logger.debug(f"Connected to S3 endpoint: {self.config['endpoint_url']}")
                yield client
        except Exception as e:
            logger.error(f"S3 client error: {str(e)}")
            raise

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """
        Write an object without overwriting an existing one.

        Returns:
            str: The storage key that was written
        """
        try:
            async with self.get_client() as client:
                await client.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type or 'application/octet-stream',
                    CacheControl=self.cache_control,
                    IfNoneMatch='*'
                )
            logger.info(f"Uploaded {len(data)} bytes to {bucket}/{key}")
            return key
        except Exception as e:
            logger.error(f"S3 upload error for {bucket}/{key}: {str(e)}")
            logger.debug(traceback.format_exc())
            raise StorageError("Upload failed")

    def public_url_for(self, bucket: str, key: str) -> str:
        """Public link for an object, buckets are expected to allow anonymous reads"""
        return f"{self.public_url}/{bucket}/{quote(key)}"

    async def delete(self, bucket: str, key: str) -> None:
        try:
            async with self.get_client() as client:
                await client.delete_object(
                    Bucket=bucket,
                    Key=key
                )
        except Exception as e:
            logger.error(f"S3 delete error for {bucket}/{key}: {str(e)}")
            raise StorageError("Deletion failed")

    async def list_objects(self, bucket: str) -> List[Tuple[str, datetime]]:
        """List (key, last modified) for every object in a bucket, following continuation tokens"""
        objects = []
        try:
            async with self.get_client() as client:
                paginator = client.get_paginator('list_objects_v2')
                async for page in paginator.paginate(Bucket=bucket):
                    for item in page.get('Contents', []):
                        objects.append((item['Key'], item['LastModified']))
        except Exception as e:
            logger.error(f"S3 listing error for {bucket}: {str(e)}")
            raise StorageError(f"Listing {bucket} failed")
        logger.debug(f"Listed {len(objects)} objects in {bucket}")
        return objects

    async def check_connection(self, *buckets: str) -> bool:
        """
        Test the S3 connection and that every bucket is reachable.
        Returns True if connection is successful, False otherwise.
        """
        try:
            async with self.get_client() as client:
                for bucket in buckets:
                    try:
                        await client.head_bucket(Bucket=bucket)
                    except Exception as e:
                        logger.error(f"Bucket access error for '{bucket}': {str(e)}")
                        return False

            logger.info(f"Successfully connected to S3 and verified buckets {', '.join(buckets)}")
            return True

        except Exception as e:
            logger.error(f"S3 connection test failed: {str(e)}")
            logger.error(traceback.format_exc())
            return False
