"""
S3 Upload Backend
Multipart sessions on the user's own bucket and the part uploader shared by both tiers
"""

import base64
import hashlib
import logging
from typing import Callable, List, Optional

import boto3
import requests
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import BackupJobConfig
from .exceptions import ConfigError, DBackedError, NetworkError
from .models import PartEtag, PartUploadDescriptor
from .stream import StreamReader

logger = logging.getLogger(__name__)

PRESIGNED_URL_EXPIRATION = 3600  # 1 hour
PART_UPLOAD_TIMEOUT = 600  # seconds

GenerateUrl = Callable[[int, str], str]


def _wrap_boto_error(action: str, e: Exception) -> NetworkError:
    if isinstance(e, ClientError):
        error = e.response.get("Error", {})
        status_code = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return NetworkError(
            f"S3 {action} failed: {error.get('Message', str(e))}",
            code=error.get("Code"),
            status_code=status_code,
            response_body=e.response
        )
    return NetworkError(f"S3 {action} failed: {str(e)}", code="ES3UNREACHABLE")


class S3Storage:
    """Multipart upload session on a self-managed S3 bucket"""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str,
        bucket_name: str,
        client=None
    ):
        """
        Initialize S3 storage

        Args:
            access_key: S3 access key ID
            secret_key: S3 secret access key
            region: Bucket region
            bucket_name: Bucket name
            client: Existing boto3 S3 client (optional)
        """
        self.bucket_name = bucket_name
        self.client = client or boto3.client(
            's3',
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version='s3v4'),
            region_name=region
        )

        logger.debug(f"S3 storage initialized for bucket: {bucket_name}")

    @classmethod
    def from_config(cls, config: BackupJobConfig) -> "S3Storage":
        if not (config.s3_access_key_id and config.s3_secret_access_key and config.s3_region and config.s3_bucket):
            raise ConfigError("S3 credentials are required for the free subscription", code="EINVALIDCONFIG")
        return cls(
            access_key=config.s3_access_key_id,
            secret_key=config.s3_secret_access_key,
            region=config.s3_region,
            bucket_name=config.s3_bucket
        )

    def get_bucket_info(self) -> dict:
        """Check the credentials can reach the bucket"""
        try:
            return self.client.head_bucket(Bucket=self.bucket_name)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to reach bucket {self.bucket_name}: {e}")
            raise _wrap_boto_error("head bucket", e) from e

    def init_multipart_upload(self, filename: str) -> str:
        """
        Open a multipart upload session

        Returns:
            Upload ID
        """
        try:
            response = self.client.create_multipart_upload(
                Bucket=self.bucket_name,
                Key=filename,
                ContentType='application/octet-stream'
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to open multipart upload: {e}")
            raise _wrap_boto_error("create multipart upload", e) from e

        upload_id = response['UploadId']
        logger.info(f"Multipart upload opened for {filename}")
        return upload_id

    def get_upload_part_url(self, filename: str, upload_id: str, part_number: int, part_hash: str) -> str:
        """
        Pre-signed URL for one part, bound to the part's Content-MD5

        Args:
            filename: Object key
            upload_id: Multipart upload ID
            part_number: Part number, from 1
            part_hash: Base64 MD5 of the part
        """
        try:
            return self.client.generate_presigned_url(
                'upload_part',
                Params={
                    'Bucket': self.bucket_name,
                    'Key': filename,
                    'UploadId': upload_id,
                    'PartNumber': part_number,
                    'ContentMD5': part_hash
                },
                ExpiresIn=PRESIGNED_URL_EXPIRATION
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to sign part {part_number}: {e}")
            raise _wrap_boto_error("sign upload part", e) from e

    def complete_multipart_upload(self, filename: str, upload_id: str, parts: List[PartEtag]) -> None:
        """Assemble the uploaded parts, in order"""
        try:
            self.client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=filename,
                UploadId=upload_id,
                MultipartUpload={
                    'Parts': [
                        {'ETag': part.etag, 'PartNumber': part.part_number}
                        for part in parts
                    ]
                }
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to complete multipart upload: {e}")
            raise _wrap_boto_error("complete multipart upload", e) from e

        logger.info(f"Multipart upload completed for {filename} ({len(parts)} parts)")


def compute_part_hash(data: bytes) -> str:
    """Base64 MD5, the Content-MD5 header value"""
    return base64.b64encode(hashlib.md5(data).digest()).decode('utf-8')


def put_part(descriptor: PartUploadDescriptor, data: bytes, session: Optional[requests.Session] = None) -> str:
    """
    Send one part to its pre-signed URL

    Returns:
        The part's ETag
    """
    http = session or requests
    try:
        response = http.put(
            descriptor.url,
            data=data,
            headers={'Content-MD5': descriptor.part_hash},
            timeout=PART_UPLOAD_TIMEOUT
        )
    except requests.exceptions.RequestException as e:
        raise NetworkError(f"Upload of part {descriptor.part_number} failed: {str(e)}", code="EUPLOADFAILED") from e

    if response.status_code >= 400:
        # no code: the object store's body is the failure detail reported upstream
        raise NetworkError(
            f"Upload of part {descriptor.part_number} failed with HTTP {response.status_code}",
            status_code=response.status_code,
            response_body=response.text
        )

    etag = response.headers.get('ETag')
    if not etag:
        raise NetworkError(f"No ETag returned for part {descriptor.part_number}", code="EUPLOADFAILED")
    return etag


def upload_to_s3(
    reader: StreamReader,
    generate_url: GenerateUrl,
    part_size: int,
    session: Optional[requests.Session] = None
) -> List[PartEtag]:
    """
    Upload a stream as consecutive parts

    Parts are read, signed and sent one after the other. The first failure
    aborts the stream: no later part is requested.

    Args:
        reader: Stream to upload
        generate_url: Returns the upload URL of (part number, part hash)
        part_size: Size of every part but the last
        session: requests session (optional)

    Returns:
        One PartEtag per part, in part order
    """
    parts: List[PartEtag] = []
    part_number = 1

    try:
        while True:
            data = reader.read_exactly(part_size)
            if not data and parts:
                break

            part_hash = compute_part_hash(data)
            descriptor = PartUploadDescriptor(
                part_number=part_number,
                url=generate_url(part_number, part_hash),
                part_hash=part_hash
            )
            logger.debug(f"Uploading part {part_number} ({len(data)} bytes)")
            etag = put_part(descriptor, data, session=session)
            parts.append(PartEtag(part_number=part_number, etag=etag))
            logger.info(f"Part {part_number} uploaded")

            if len(data) < part_size:
                break
            part_number += 1
    except DBackedError as e:
        reader.abort(e)
        raise
    except Exception as e:
        reader.abort(e)
        raise NetworkError(f"Upload failed: {str(e)}", code="EUPLOADFAILED") from e

    return parts
