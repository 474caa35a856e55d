from __future__ import annotations

import logging
from typing import Mapping

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from stratus.backends.aws import adapter_error, client_for, error_code
from stratus.backends.base import AdapterError, DeleteOutcome, FunctionDeployment, ResourceHandle
from stratus.config import Settings
from stratus.services.constants import RESOURCE_FUNCTION

logger = logging.getLogger(__name__)

RUNTIME = "provided.al2023"
HANDLER = "bootstrap"
FUNCTION_TIMEOUT_SECONDS = 30
_WAITER_CONFIG = {"Delay": 2, "MaxAttempts": 60}


def artifact_key(version: str) -> str:
    return f"releases/{version}/bootstrap.zip"


class LambdaComputeBackend:
    """Runs each instance as a Lambda function exposed through a function URL."""

    def __init__(self, lambda_client, *, role_arn: str | None, artifact_bucket: str) -> None:
        self._lambda = lambda_client
        self._role_arn = role_arn
        self._artifact_bucket = artifact_bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "LambdaComputeBackend":
        return cls(
            client_for(settings, "lambda"),
            role_arn=settings.lambda_role_arn,
            artifact_bucket=settings.artifact_bucket,
        )

    def find_function(self, name: str) -> FunctionDeployment | None:
        try:
            response = self._lambda.get_function(FunctionName=name)
        except ClientError as exc:
            if error_code(exc) == "ResourceNotFoundException":
                return None
            raise adapter_error(f"Failed to look up function {name}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to look up function {name}", exc) from exc
        arn = response["Configuration"]["FunctionArn"]
        return FunctionDeployment(
            handle=ResourceHandle(RESOURCE_FUNCTION, name, arn),
            endpoint_url=self._ensure_url(name),
        )

    def deploy(
        self, name: str, env: Mapping[str, str], artifact_version: str, *, memory_mb: int
    ) -> FunctionDeployment:
        if not self._role_arn:
            raise AdapterError("STRATUS_LAMBDA_ROLE_ARN must be set to deploy functions")
        logger.info("Creating function %s (version=%s memory=%sMB)", name, artifact_version, memory_mb)
        try:
            response = self._lambda.create_function(
                FunctionName=name,
                Runtime=RUNTIME,
                Role=self._role_arn,
                Handler=HANDLER,
                Code={"S3Bucket": self._artifact_bucket, "S3Key": artifact_key(artifact_version)},
                MemorySize=memory_mb,
                Timeout=FUNCTION_TIMEOUT_SECONDS,
                Environment={"Variables": dict(env)},
                Tags={"artifact_version": artifact_version},
            )
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to create function {name}", exc) from exc

        try:
            self._wait("function_active_v2", name)
            url = self._ensure_url(name)
        except AdapterError:
            logger.warning("Function %s did not become usable; removing it", name)
            self.teardown(name)
            raise
        return FunctionDeployment(
            handle=ResourceHandle(RESOURCE_FUNCTION, name, response["FunctionArn"]),
            endpoint_url=url,
        )

    def update(
        self, deployment: FunctionDeployment, env: Mapping[str, str], artifact_version: str
    ) -> FunctionDeployment:
        name = deployment.handle.identifier
        logger.info("Updating function %s to version %s", name, artifact_version)
        try:
            self._lambda.update_function_code(
                FunctionName=name,
                S3Bucket=self._artifact_bucket,
                S3Key=artifact_key(artifact_version),
            )
            self._wait("function_updated_v2", name)
            self._lambda.update_function_configuration(FunctionName=name, Environment={"Variables": dict(env)})
            self._wait("function_updated_v2", name)
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to update function {name}", exc) from exc
        return FunctionDeployment(handle=deployment.handle, endpoint_url=self._ensure_url(name))

    def teardown(self, function_handle: str) -> DeleteOutcome:
        try:
            self._lambda.delete_function(FunctionName=function_handle)
        except ClientError as exc:
            if error_code(exc) == "ResourceNotFoundException":
                return DeleteOutcome.NOT_FOUND
            raise adapter_error(f"Failed to delete function {function_handle}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to delete function {function_handle}", exc) from exc
        logger.info("Deleted function %s", function_handle)
        return DeleteOutcome.DELETED

    def _wait(self, waiter_name: str, name: str) -> None:
        try:
            self._lambda.get_waiter(waiter_name).wait(FunctionName=name, WaiterConfig=_WAITER_CONFIG)
        except WaiterError as exc:
            raise AdapterError(f"Function {name} did not settle ({waiter_name}): {exc}", category="retryable") from exc

    def _ensure_url(self, name: str) -> str:
        try:
            try:
                return self._lambda.get_function_url_config(FunctionName=name)["FunctionUrl"]
            except ClientError as exc:
                if error_code(exc) != "ResourceNotFoundException":
                    raise
            url = self._lambda.create_function_url_config(FunctionName=name, AuthType="NONE")["FunctionUrl"]
            try:
                self._lambda.add_permission(
                    FunctionName=name,
                    StatementId="FunctionURLAllowPublicAccess",
                    Action="lambda:InvokeFunctionUrl",
                    Principal="*",
                    FunctionUrlAuthType="NONE",
                )
            except ClientError as exc:
                if error_code(exc) != "ResourceConflictException":
                    raise
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to publish URL for function {name}", exc) from exc
        logger.debug("Function %s reachable at %s", name, url)
        return url
