import json
import re
from typing import Any, Dict, List, Mapping, Optional

from kubeinvoke.modules.api.models import (
    APP_LABEL,
    APP_LABEL_VALUE,
    INVOCATION_KEY_LABEL,
    NAMESPACE_ANNOTATION,
    REQUEST_ID_ANNOTATION,
    TASK_ANNOTATION,
    TASK_LABEL,
    TaskDefinition,
)
from kubeinvoke.modules.identity import ExecutionIdentity

# Environment contract with the task container entrypoint
HANDLER_ENV = "LAMBDA_HANDLER"
TASK_NAME_ENV = "LAMBDA_TASK_NAME"
REQUEST_ID_ENV = "LAMBDA_REQUEST_ID"
KWARGS_ENV = "LAMBDA_KWARGS"
RESERVED_ENV = (HANDLER_ENV, TASK_NAME_ENV, REQUEST_ID_ENV, KWARGS_ENV)

CONTAINER_NAME = "task"

_LABEL_TRIM = re.compile(r"^[^A-Za-z0-9]+|[^A-Za-z0-9]+$")


def encode_kwargs(kwargs: Mapping[str, Any]) -> str:
    """
    Serialize kwargs for the LAMBDA_KWARGS variable.

    Sorted keys and compact separators, so equal mappings always encode to
    the same string. Entrypoints decode it with a plain json.loads.
    """
    return json.dumps(kwargs, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _label_value(value: str) -> str:
    return _LABEL_TRIM.sub("", value[:63])


class JobBuilder:
    """
    Materializes batch/v1 Job manifests from Task definitions.

    Pure: build() only computes a dict, it never talks to the cluster.
    """

    def __init__(self, backoff_limit: int = 0, ttl_seconds_after_finished: Optional[int] = 3600):
        """
        Initialize job builder.

        Args:
            backoff_limit: Pod retries the Job controller may perform
            ttl_seconds_after_finished: Cluster-side cleanup delay for finished
                Jobs; None leaves retention to the cluster's own policy
        """
        self.backoff_limit = backoff_limit
        self.ttl_seconds_after_finished = ttl_seconds_after_finished

    @staticmethod
    def merge_kwargs(task: TaskDefinition, kwargs: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Task defaultArgs overlaid with request kwargs (request wins)."""
        merged = dict(task.default_args)
        merged.update(kwargs or {})
        return merged

    @staticmethod
    def shadowed_env(task: TaskDefinition) -> List[str]:
        """Task env names that collide with the reserved LAMBDA_* variables."""
        return [name for name in task.default_env if name in RESERVED_ENV]

    @staticmethod
    def provenance(identity: ExecutionIdentity) -> Dict[str, Dict[str, str]]:
        """Labels and annotations that tie a Job to its invocation."""
        return {
            "labels": {
                APP_LABEL: APP_LABEL_VALUE,
                TASK_LABEL: _label_value(identity.task_name),
                INVOCATION_KEY_LABEL: identity.invocation_key,
            },
            "annotations": {
                REQUEST_ID_ANNOTATION: identity.request_id,
                TASK_ANNOTATION: identity.task_name,
                NAMESPACE_ANNOTATION: identity.namespace,
            },
        }

    @staticmethod
    def matches_provenance(job: Mapping[str, Any], identity: ExecutionIdentity) -> bool:
        """True if an existing Job was created for exactly this invocation."""
        annotations = (job.get("metadata") or {}).get("annotations") or {}
        return (
            annotations.get(REQUEST_ID_ANNOTATION) == identity.request_id
            and annotations.get(TASK_ANNOTATION) == identity.task_name
            and annotations.get(NAMESPACE_ANNOTATION) == identity.namespace
        )

    def build(
        self,
        task: TaskDefinition,
        kwargs: Optional[Mapping[str, Any]],
        identity: ExecutionIdentity,
    ) -> Dict[str, Any]:
        """
        Build the Job manifest for one invocation.

        Args:
            task: Resolved Task definition
            kwargs: Request kwargs
            identity: Execution identity from the identity module

        Returns:
            batch/v1 Job manifest as a dict
        """
        env = [
            {"name": HANDLER_ENV, "value": task.handler},
            {"name": TASK_NAME_ENV, "value": task.name},
            {"name": REQUEST_ID_ENV, "value": identity.request_id},
            {"name": KWARGS_ENV, "value": encode_kwargs(self.merge_kwargs(task, kwargs))},
        ]
        for name, value in task.default_env.items():
            if name not in RESERVED_ENV:
                env.append({"name": name, "value": value})

        container: Dict[str, Any] = {
            "name": CONTAINER_NAME,
            "image": task.image,
            "imagePullPolicy": task.image_pull_policy,
            "env": env,
        }
        limits = task.resources.limits.as_dict()
        requests = task.resources.requests.as_dict()
        if limits or requests:
            container["resources"] = {}
            if limits:
                container["resources"]["limits"] = limits
            if requests:
                container["resources"]["requests"] = requests

        provenance = self.provenance(identity)
        spec: Dict[str, Any] = {
            "backoffLimit": self.backoff_limit,
            "template": {
                "metadata": {"labels": dict(provenance["labels"])},
                "spec": {
                    "containers": [container],
                    "restartPolicy": "Never",
                    "activeDeadlineSeconds": task.timeout_seconds,
                },
            },
        }
        if self.ttl_seconds_after_finished is not None:
            spec["ttlSecondsAfterFinished"] = self.ttl_seconds_after_finished

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": identity.job_name,
                "namespace": identity.namespace,
                "labels": provenance["labels"],
                "annotations": provenance["annotations"],
            },
            "spec": spec,
        }
