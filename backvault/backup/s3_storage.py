"""
S3 and S3-compatible object store backend.

Works against AWS S3 and S3-compatible services (MinIO, DigitalOcean
Spaces, ...) through a custom endpoint and optional path-style
addressing. Large files are uploaded in parts with bounded parallelism.
"""

import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from .errors import (
    AuthError,
    BackendConnectionError,
    ObjectNotFoundError,
    TransferError,
    UnsupportedOperationError,
)
from .retry import RetryPolicy
from .storage import (
    DeleteResult,
    ListResult,
    ObjectInfo,
    StorageBackend,
    TransferOptions,
    UploadResult,
    classify_os_error,
    copy_stream,
)

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024

NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound', 'NoSuchBucket'}
AUTH_CODES = {
    '401', '403', 'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch',
    'ExpiredToken', 'InvalidToken', 'AllAccessDisabled', 'AccountProblem',
}
THROTTLE_CODES = {
    'SlowDown', 'Throttling', 'ThrottlingException', 'RequestTimeout',
    'RequestLimitExceeded', 'ServiceUnavailable', 'InternalError', '500', '503',
}


def classify_s3_error(error: Exception, key: str = None) -> TransferError:
    """
    Map a botocore exception onto the transfer taxonomy.

    Args:
        error: Exception raised by the boto3 client
        key: Object key involved in the failed call

    Returns:
        TransferError subclass instance
    """
    if isinstance(error, ClientError):
        error_code = str(error.response.get('Error', {}).get('Code', 'Unknown'))
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0

        if error_code in NOT_FOUND_CODES or status == 404:
            return ObjectNotFoundError(f"S3 object not found ({error_code}): {key}", key=key)
        if error_code in AUTH_CODES or status in (401, 403):
            return AuthError(f"S3 access denied ({error_code}): {error}", key=key)
        if error_code in THROTTLE_CODES or status == 429 or status >= 500:
            return BackendConnectionError(f"S3 unavailable ({error_code}): {error}", key=key)
        return TransferError(f"S3 request failed ({error_code}): {error}", key=key, retryable=False)

    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return BackendConnectionError(f"S3 connection failed: {error}", key=key)
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return AuthError(f"S3 credentials missing: {error}", key=key)
    return TransferError(f"S3 operation failed: {error}", key=key, retryable=False)


class S3Storage(StorageBackend):
    """
    Backend for AWS S3 and S3-compatible object stores.

    Keys are used verbatim as object keys inside the configured bucket.
    """

    kind = 'object-store'
    delete_batch_size = 1000

    def __init__(self, params: dict, retry_policy: Optional[RetryPolicy] = None,
                 multipart_threshold: int = 100 * 1024 * 1024,
                 chunk_size: int = 10 * 1024 * 1024,
                 max_parallel_chunks: int = 4):
        """
        Initialize S3 storage backend.

        Args:
            params: Connection parameters:
                - bucket: Bucket name
                - region: AWS region (default: us-east-1)
                - endpoint: Custom endpoint for S3-compatible services (optional)
                - access_key_id / secret_access_key: Credentials
                - force_path_style: Use path-style URLs (required for MinIO)
                - ssl_enabled: Use https for endpoints given without a scheme (default: True)
            retry_policy: Retry policy shared by all operations
            multipart_threshold: Files larger than this are uploaded in parts
            chunk_size: Size of each part
            max_parallel_chunks: Parts uploaded concurrently for one file
        """
        super().__init__(retry_policy)
        self.bucket_name = params['bucket']
        self.region = params.get('region') or 'us-east-1'
        self.multipart_threshold = multipart_threshold
        self.chunk_size = max(chunk_size, MIN_PART_SIZE)
        self.max_parallel_chunks = max(max_parallel_chunks, 1)

        endpoint = params.get('endpoint')
        if endpoint and '://' not in endpoint:
            scheme = 'https' if params.get('ssl_enabled', True) else 'http'
            endpoint = f"{scheme}://{endpoint}"

        boto_config = BotoConfig(
            region_name=self.region,
            # Retries are handled by the shared RetryPolicy
            retries={'total_max_attempts': 1, 'mode': 'standard'},
            s3={'addressing_style': 'path' if params.get('force_path_style') else 'auto'},
            max_pool_connections=max(10, self.max_parallel_chunks * 2),
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=params.get('access_key_id'),
                aws_secret_access_key=params.get('secret_access_key'),
                endpoint_url=endpoint,
                config=boto_config,
            )
        except (BotoCoreError, ValueError) as e:
            raise TransferError(f"Failed to initialize S3 client: {e}", retryable=False)

    def _call(self, operation: str, key: str = None, **kwargs):
        try:
            return getattr(self.s3_client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, key) from e

    @staticmethod
    def _put_args(options: TransferOptions) -> dict:
        args = {'ContentType': options.content_type or 'application/octet-stream'}
        if options.metadata:
            args['Metadata'] = {str(k): str(v) for k, v in options.metadata.items()}
        return args

    def upload(self, local_path: str, remote_key: str, options: Optional[TransferOptions] = None) -> UploadResult:
        """
        Upload a file, switching to multipart above the threshold.

        Raises:
            TransferError: If the upload fails; a failed multipart upload is aborted
        """
        options = options or TransferOptions()
        if not os.path.isfile(local_path):
            raise TransferError(f"Local file not found: {local_path}", key=remote_key)

        file_size = os.path.getsize(local_path)
        if file_size > self.multipart_threshold:
            return self._multipart_upload(local_path, remote_key, file_size, options)
        return self._retry(self._upload_once, local_path, remote_key, options)

    def _upload_once(self, local_path, remote_key, options):
        file_size = os.path.getsize(local_path)
        with open(local_path, 'rb') as f:
            response = self._call(
                'put_object', remote_key,
                Bucket=self.bucket_name,
                Key=remote_key,
                Body=f,
                **self._put_args(options)
            )
        if options.progress:
            options.progress(file_size, file_size)
        return UploadResult(key=remote_key, size=file_size, etag=response.get('ETag'))

    def _multipart_upload(self, local_path: str, remote_key: str, file_size: int,
                          options: TransferOptions) -> UploadResult:
        """
        Upload a large file in parts.

        At most max_parallel_chunks parts are in flight. Each part is retried
        independently; if any part fails for good the multipart upload is
        aborted so no orphaned fragments remain.
        """
        response = self._retry(
            self._call, 'create_multipart_upload', remote_key,
            Bucket=self.bucket_name, Key=remote_key, **self._put_args(options)
        )
        upload_id = response['UploadId']

        part_specs = [
            (number, offset, min(self.chunk_size, file_size - offset))
            for number, offset in enumerate(range(0, file_size, self.chunk_size), start=1)
        ]
        uploaded = 0
        progress_lock = threading.Lock()

        def send_part(part_number: int, offset: int, length: int) -> dict:
            nonlocal uploaded

            def attempt():
                with open(local_path, 'rb') as f:
                    f.seek(offset)
                    data = f.read(length)
                return self._call(
                    'upload_part', remote_key,
                    Bucket=self.bucket_name,
                    Key=remote_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

            part_response = self._retry(attempt)
            with progress_lock:
                uploaded += length
                if options.progress:
                    options.progress(uploaded, file_size)
            return {'PartNumber': part_number, 'ETag': part_response['ETag']}

        pool = ThreadPoolExecutor(max_workers=self.max_parallel_chunks, thread_name_prefix='s3-part')
        try:
            futures = [pool.submit(send_part, *spec) for spec in part_specs]
            parts = [future.result() for future in futures]
            pool.shutdown(wait=True)

            result = self._retry(
                self._call, 'complete_multipart_upload', remote_key,
                Bucket=self.bucket_name,
                Key=remote_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': sorted(parts, key=lambda p: p['PartNumber'])}
            )
        except Exception:
            pool.shutdown(wait=True, cancel_futures=True)
            self._abort_multipart(remote_key, upload_id)
            raise

        logger.info(f"Completed multipart upload for {remote_key} ({len(parts)} parts)")
        return UploadResult(
            key=remote_key, size=file_size, etag=result.get('ETag'),
            multipart=True, parts=len(parts)
        )

    def _abort_multipart(self, remote_key: str, upload_id: str):
        logger.warning(f"Aborting multipart upload for {remote_key}")
        try:
            self._call('abort_multipart_upload', remote_key,
                       Bucket=self.bucket_name, Key=remote_key, UploadId=upload_id)
        except TransferError as e:
            logger.error(f"Failed to abort multipart upload {upload_id} for {remote_key}: {e}")

    def _download_once(self, remote_key, local_path, options):
        kwargs = {'Bucket': self.bucket_name, 'Key': remote_key}
        if options.byte_range:
            start, end = options.byte_range
            kwargs['Range'] = f"bytes={start}-{'' if end is None else end}"

        response = self._call('get_object', remote_key, **kwargs)
        total = response.get('ContentLength', 0)
        tmp = f"{local_path}.{uuid.uuid4().hex}.part"

        try:
            with open(tmp, 'wb') as dst:
                written = copy_stream(response['Body'], dst, total, options.progress)
            os.replace(tmp, local_path)
            return written
        except BotoCoreError as e:
            raise classify_s3_error(e, remote_key) from e
        except OSError as e:
            raise classify_os_error(e, remote_key) from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def _exists_once(self, remote_key):
        self._call('head_object', remote_key, Bucket=self.bucket_name, Key=remote_key)
        return True

    def _list_once(self, prefix, max_keys, continuation_token):
        kwargs = {'Bucket': self.bucket_name, 'Prefix': prefix, 'MaxKeys': max_keys}
        if continuation_token:
            kwargs['ContinuationToken'] = continuation_token

        response = self._call('list_objects_v2', prefix, **kwargs)
        entries = [
            ObjectInfo(key=obj['Key'], size=obj.get('Size', 0), last_modified=obj.get('LastModified'))
            for obj in response.get('Contents', [])
        ]
        token = response.get('NextContinuationToken') if response.get('IsTruncated') else None
        return ListResult(entries=entries, continuation_token=token)

    def _delete_once(self, remote_key):
        self._call('delete_object', remote_key, Bucket=self.bucket_name, Key=remote_key)

    def _delete_batch(self, keys):
        response = self._call(
            'delete_objects', keys[0],
            Bucket=self.bucket_name,
            Delete={'Objects': [{'Key': key} for key in keys], 'Quiet': False}
        )
        return DeleteResult(
            deleted=[item['Key'] for item in response.get('Deleted', [])],
            errors=[
                {'key': item.get('Key'), 'error': f"{item.get('Code')}: {item.get('Message')}"}
                for item in response.get('Errors', [])
            ]
        )

    def _copy_once(self, source_key, target_key):
        return self._call(
            'copy_object', source_key,
            Bucket=self.bucket_name,
            CopySource={'Bucket': self.bucket_name, 'Key': source_key},
            Key=target_key
        )

    def signed_url(self, operation: str, remote_key: str, ttl: int = 3600) -> str:
        """
        Generate a time-limited URL for reading or writing an object.

        Args:
            operation: 'get'/'read' or 'put'/'write'
            remote_key: Object key
            ttl: Lifetime in seconds

        Returns:
            Pre-signed URL
        """
        methods = {'get': 'get_object', 'read': 'get_object', 'put': 'put_object', 'write': 'put_object'}
        client_method = methods.get(operation.lower())
        if not client_method:
            raise UnsupportedOperationError(f"Unsupported operation: {operation}", key=remote_key)

        return self._call(
            'generate_presigned_url', remote_key,
            ClientMethod=client_method,
            Params={'Bucket': self.bucket_name, 'Key': remote_key},
            ExpiresIn=ttl
        )

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            AuthError: If credentials are rejected
            TransferError: If the bucket does not exist or is unreachable
        """
        try:
            self._retry(self._call, 'head_bucket', None, Bucket=self.bucket_name)
        except ObjectNotFoundError:
            raise TransferError(f"Bucket does not exist: {self.bucket_name}", retryable=False)
        logger.info(f"Successfully connected to S3 bucket: {self.bucket_name}")
        return True

    def close(self):
        self.s3_client.close()
