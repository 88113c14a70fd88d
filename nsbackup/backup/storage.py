"""
Object storage for backup archives.

S3Storage uploads a finished archive exactly once per run and returns a
retrievable reference. Transient transport failures are retried with
exponential backoff; authorization and quota failures are not.
"""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from .errors import StorageError
from .results import UploadReceipt


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

TRANSIENT_ERROR_CODES = {
    'InternalError',
    'RequestTimeout',
    'RequestTimeoutException',
    'ServiceUnavailable',
    'SlowDown',
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
}


def build_object_key(prefix: str, filename: str, now: Optional[datetime] = None) -> str:
    """
    Build the object key for an archive.

    Format: {prefix}/{YYYY}/{MM}/{filename}
    """
    now = now or datetime.now(timezone.utc)
    prefix = prefix.strip('/')
    key = f"{now.year}/{now.month:02d}/{filename}"
    return f"{prefix}/{key}" if prefix else key


def _is_transient_client_error(error: ClientError) -> bool:
    code = error.response.get('Error', {}).get('Code', '')
    status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0
    return code in TRANSIENT_ERROR_CODES or status >= 500


class S3Storage:
    """
    Handler for uploading backups to AWS S3 (or an S3-compatible service).
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        presign_expires: Optional[int] = 7 * 24 * 3600,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
            endpoint_url: Custom endpoint for S3-compatible services
            max_retries: Retries for transient failures after the first attempt
            backoff_seconds: Base delay, doubled after every retry
            presign_expires: Lifetime of the returned download URL in seconds;
                None returns an s3:// URI instead
            sleep: Sleep function (injectable for tests)
        """
        if not bucket_name:
            raise StorageError("S3 bucket not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.presign_expires = presign_expires
        self._sleep = sleep

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                # Retries are handled by upload()
                config=BotoConfig(retries={'max_attempts': 1, 'mode': 'standard'})
            )
        except BotoCoreError as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable[[], None]] = None) -> UploadReceipt:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            s3_key: Object key to upload to
            cancellation_check: Optional function called between attempts and
                multipart chunks; raises to cancel the upload

        Returns:
            UploadReceipt with key, reference URL and size

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        file_size = os.path.getsize(local_path)
        attempt = 0

        while True:
            if cancellation_check:
                cancellation_check()

            try:
                self._upload_once(local_path, s3_key, file_size, cancellation_check)
                break
            except StorageError as e:
                if not e.transient or attempt >= self.max_retries:
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Transient S3 failure ({e}); retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                self._sleep(delay)

        logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{s3_key} ({file_size} bytes)")
        return UploadReceipt(key=s3_key, url=self._reference(s3_key), size_bytes=file_size)

    def _upload_once(self, local_path: str, s3_key: str, file_size: int, cancellation_check=None):
        try:
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                self._simple_upload(local_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}", transient=_is_transient_client_error(e))
        except (BotoConnectionError, HTTPClientError) as e:
            raise StorageError(f"S3 upload failed: {e}", transient=True)
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read archive for upload: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """
        Upload file using simple put_object.
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check=None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted on any failure so no partial object is left behind.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def _reference(self, s3_key: str) -> str:
        """Download reference for an uploaded object."""
        if self.presign_expires:
            try:
                return self.s3_client.generate_presigned_url(
                    'get_object',
                    Params={'Bucket': self.bucket_name, 'Key': s3_key},
                    ExpiresIn=self.presign_expires
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Failed to presign s3://{self.bucket_name}/{s3_key}: {e}")
        return f"s3://{self.bucket_name}/{s3_key}"
