from __future__ import annotations

import json
import logging

from botocore.exceptions import BotoCoreError, ClientError

from stratus.backends.aws import adapter_error, client_for, error_code, http_status
from stratus.backends.base import AccessKey, AdapterError, BucketResult, DeleteOutcome, ResourceHandle
from stratus.config import Settings
from stratus.services.constants import RESOURCE_BUCKET

logger = logging.getLogger(__name__)

_MISSING_BUCKET_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})
_DELETE_BATCH = 1000
POLICY_NAME = "bucket-access"


def _bucket_policy(bucket: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["s3:ListBucket", "s3:GetBucketLocation"],
                    "Resource": f"arn:aws:s3:::{bucket}",
                },
                {
                    "Effect": "Allow",
                    "Action": ["s3:GetObject", "s3:PutObject", "s3:DeleteObject"],
                    "Resource": f"arn:aws:s3:::{bucket}/*",
                },
            ],
        }
    )


class S3StorageBackend:
    """Private bucket per instance plus an IAM user scoped to that bucket."""

    def __init__(self, s3_client, iam_client, *, region: str) -> None:
        self._s3 = s3_client
        self._iam = iam_client
        self._region = region

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3StorageBackend":
        region = settings.storage_region or settings.aws_region
        s3_kwargs = {"region_name": region}
        if settings.storage_endpoint_url:
            s3_kwargs["endpoint_url"] = settings.storage_endpoint_url
        return cls(client_for(settings, "s3", **s3_kwargs), client_for(settings, "iam"), region=region)

    @staticmethod
    def user_name(bucket: str) -> str:
        return f"{bucket}-app"

    def find_bucket(self, name: str) -> ResourceHandle | None:
        try:
            self._s3.head_bucket(Bucket=name)
        except ClientError as exc:
            if error_code(exc) in _MISSING_BUCKET_CODES or http_status(exc) == 404:
                return None
            raise adapter_error(f"Failed to look up bucket {name}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to look up bucket {name}", exc) from exc
        return ResourceHandle(RESOURCE_BUCKET, name, self._region)

    def create_bucket(self, name: str) -> BucketResult:
        logger.info("Creating bucket %s in %s", name, self._region)
        kwargs: dict = {"Bucket": name}
        if self._region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        try:
            self._s3.create_bucket(**kwargs)
        except ClientError as exc:
            if error_code(exc) != "BucketAlreadyOwnedByYou":
                raise adapter_error(f"Failed to create bucket {name}", exc) from exc
            logger.debug("Bucket %s already owned by this account", name)
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to create bucket {name}", exc) from exc

        try:
            self._s3.put_public_access_block(
                Bucket=name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
            self._s3.put_bucket_encryption(
                Bucket=name,
                ServerSideEncryptionConfiguration={
                    "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
                },
            )
            access_key = self.issue_access_key(name)
        except (ClientError, BotoCoreError, AdapterError) as exc:
            logger.warning("Bucket %s created but could not be configured; removing it", name)
            self.delete_bucket(name)
            if isinstance(exc, AdapterError):
                raise
            raise adapter_error(f"Failed to configure bucket {name}", exc) from exc
        return BucketResult(handle=ResourceHandle(RESOURCE_BUCKET, name, self._region), access_key=access_key)

    def issue_access_key(self, bucket_id: str) -> AccessKey:
        """Create (or reuse) the bucket's IAM user and replace its access keys."""
        user = self.user_name(bucket_id)
        try:
            try:
                self._iam.create_user(UserName=user, Tags=[{"Key": "bucket", "Value": bucket_id}])
            except ClientError as exc:
                if error_code(exc) != "EntityAlreadyExists":
                    raise
            self._iam.put_user_policy(UserName=user, PolicyName=POLICY_NAME, PolicyDocument=_bucket_policy(bucket_id))
            for key in self._iam.list_access_keys(UserName=user).get("AccessKeyMetadata", []):
                self._iam.delete_access_key(UserName=user, AccessKeyId=key["AccessKeyId"])
            created = self._iam.create_access_key(UserName=user)["AccessKey"]
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to issue access key for bucket {bucket_id}", exc) from exc
        logger.info("Issued access key %s for bucket %s", created["AccessKeyId"], bucket_id)
        return AccessKey(key_id=created["AccessKeyId"], secret=created["SecretAccessKey"])

    def delete_bucket(self, bucket_id: str) -> DeleteOutcome:
        self._delete_user(bucket_id)
        try:
            self._empty(bucket_id)
            self._s3.delete_bucket(Bucket=bucket_id)
        except ClientError as exc:
            if error_code(exc) in _MISSING_BUCKET_CODES:
                logger.debug("Bucket %s already absent", bucket_id)
                return DeleteOutcome.NOT_FOUND
            raise adapter_error(f"Failed to delete bucket {bucket_id}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to delete bucket {bucket_id}", exc) from exc
        logger.info("Deleted bucket %s", bucket_id)
        return DeleteOutcome.DELETED

    def _empty(self, bucket_id: str) -> None:
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket_id):
            keys = [{"Key": item["Key"]} for item in page.get("Contents", [])]
            for start in range(0, len(keys), _DELETE_BATCH):
                self._s3.delete_objects(
                    Bucket=bucket_id,
                    Delete={"Objects": keys[start : start + _DELETE_BATCH], "Quiet": True},
                )

    def _delete_user(self, bucket_id: str) -> None:
        user = self.user_name(bucket_id)
        try:
            for key in self._iam.list_access_keys(UserName=user).get("AccessKeyMetadata", []):
                self._iam.delete_access_key(UserName=user, AccessKeyId=key["AccessKeyId"])
            try:
                self._iam.delete_user_policy(UserName=user, PolicyName=POLICY_NAME)
            except ClientError as exc:
                if error_code(exc) != "NoSuchEntity":
                    raise
            self._iam.delete_user(UserName=user)
        except ClientError as exc:
            if error_code(exc) == "NoSuchEntity":
                return
            raise adapter_error(f"Failed to remove IAM user {user}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to remove IAM user {user}", exc) from exc
        logger.debug("Removed IAM user %s", user)
