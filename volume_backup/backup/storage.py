"""
S3 object storage handler for snapshot archives.

Objects are keyed by the archive file name, so every key starts with the
volume name it was taken from. Credentials, region, endpoint and bucket come
from the process environment unless given explicitly.
"""

import logging
import os
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for S3 compatible object storage.

    Supports AWS S3 as well as S3 compatible endpoints (MinIO, Ceph, ...)
    through the optional endpoint URL.
    """

    def __init__(self, bucket_name: Optional[str] = None, region: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: Bucket name (default: AWS_BUCKET)
            region: AWS region (default: AWS_DEFAULT_REGION, then us-east-1)
            access_key: AWS access key ID (default: AWS_ACCESS_KEY_ID)
            secret_key: AWS secret access key (default: AWS_SECRET_ACCESS_KEY)
            endpoint_url: Custom endpoint (default: AWS_ENDPOINT)
        """
        self.bucket_name = bucket_name or os.environ.get('AWS_BUCKET')
        self.region = region or os.environ.get('AWS_DEFAULT_REGION') or 'us-east-1'
        self.endpoint_url = endpoint_url or os.environ.get('AWS_ENDPOINT') or None

        if not self.bucket_name:
            raise StorageError("No S3 bucket configured (set aws_bucket or AWS_BUCKET)")

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key or os.environ.get('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=secret_key or os.environ.get('AWS_SECRET_ACCESS_KEY'),
                region_name=self.region,
                endpoint_url=self.endpoint_url,
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, key: Optional[str] = None) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            key: Object key (default: the file name)

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        key = key or os.path.basename(local_path)

        try:
            file_size = os.path.getsize(local_path)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)
            return key

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload large file using multipart upload.

        Args:
            local_path: Path to local file
            key: S3 object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
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
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def download(self, key: str, local_path: str) -> str:
        """
        Download an object to a local file.

        Returns:
            The local path written

        Raises:
            StorageError: If download fails
        """
        try:
            self.s3_client.download_file(self.bucket_name, key, local_path)
            return local_path
        except ClientError as e:
            raise StorageError(f"S3 download of {key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download of {key} failed: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str = '') -> list:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: S3 key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def head(self, key: str) -> dict:
        """
        Fetch metadata for one object.

        Returns:
            Dict with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If the object does not exist or the call fails
        """
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            code = _error_code(e)
            if code in ('404', 'NoSuchKey', 'NotFound'):
                raise StorageError(f"Object not found: {key}")
            raise StorageError(f"S3 head failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to read S3 object {key}: {e}")

        return {
            'Key': key,
            'LastModified': response['LastModified'],
            'Size': response.get('ContentLength'),
        }

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")
