"""
Tests for the Job builder.

Tests cover:
- Environment contract (LAMBDA_* variables)
- Kwargs merge precedence and canonical encoding
- Provenance labels / annotations
- Spec fields (restart policy, deadline, retries, retention, resources)
"""

import json
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kubeinvoke.modules.api import TaskDefinition
from kubeinvoke.modules.identity import IdentityGenerator
from kubeinvoke.modules.jobs import KWARGS_ENV, JobBuilder, encode_kwargs

from conftest import task_object


def make_task(**spec) -> TaskDefinition:
    return TaskDefinition.from_resource(task_object("media", "image-processor", **spec))


def env_of(job: dict) -> dict:
    container = job["spec"]["template"]["spec"]["containers"][0]
    return {entry["name"]: entry["value"] for entry in container["env"]}


def env_names(job: dict) -> list:
    return [entry["name"] for entry in job["spec"]["template"]["spec"]["containers"][0]["env"]]


identity = IdentityGenerator().generate("media", "image-processor", "req-42")


class TestEncodeKwargs:
    """Test kwargs serialization"""

    def test_key_order_independent(self):
        """Test equal mappings encode identically"""
        assert encode_kwargs({"b": 1, "a": 2}) == encode_kwargs({"a": 2, "b": 1})

    def test_compact(self):
        """Test compact separators"""
        assert encode_kwargs({"a": [1, 2]}) == '{"a":[1,2]}'

    def test_non_ascii_preserved(self):
        """Test unicode values are kept as-is"""
        assert encode_kwargs({"name": "café"}) == '{"name":"café"}'


class TestMergeKwargs:
    """Test default args / kwargs merge"""

    def test_request_overrides_defaults(self):
        """Test request kwargs win over Task defaultArgs"""
        task = make_task(defaultArgs={"quality": 80, "format": "png"})

        merged = JobBuilder.merge_kwargs(task, {"quality": 95})

        assert merged == {"quality": 95, "format": "png"}

    def test_none_kwargs(self):
        """Test missing kwargs fall back to defaults"""
        task = make_task(defaultArgs={"quality": 80})

        assert JobBuilder.merge_kwargs(task, None) == {"quality": 80}

    def test_defaults_not_mutated(self):
        """Test merging never mutates the Task definition"""
        task = make_task(defaultArgs={"quality": 80})

        JobBuilder.merge_kwargs(task, {"quality": 1})

        assert task.default_args == {"quality": 80}


class TestBuild:
    """Test manifest construction"""

    def test_environment_contract(self):
        """Test the four LAMBDA_* variables"""
        job = JobBuilder().build(make_task(handler="process"), {"width": 800}, identity)
        env = env_of(job)

        assert env["LAMBDA_HANDLER"] == "process"
        assert env["LAMBDA_TASK_NAME"] == "image-processor"
        assert env["LAMBDA_REQUEST_ID"] == "req-42"
        assert json.loads(env[KWARGS_ENV]) == {"width": 800}

    def test_default_handler(self):
        """Test the handler defaults to 'handler'"""
        job = JobBuilder().build(make_task(), {}, identity)

        assert env_of(job)["LAMBDA_HANDLER"] == "handler"

    def test_task_env_appended(self):
        """Test Task env follows the reserved variables"""
        task = make_task(env=[{"name": "BUCKET", "value": "images"}])

        job = JobBuilder().build(task, {}, identity)

        assert env_names(job)[:4] == ["LAMBDA_HANDLER", "LAMBDA_TASK_NAME", "LAMBDA_REQUEST_ID", "LAMBDA_KWARGS"]
        assert env_of(job)["BUCKET"] == "images"

    def test_reserved_env_not_overridable(self):
        """Test a Task env entry cannot replace a LAMBDA_* variable"""
        task = make_task(env=[{"name": "LAMBDA_KWARGS", "value": "{}"}, {"name": "KEEP", "value": "1"}])

        job = JobBuilder().build(task, {"a": 1}, identity)

        assert env_names(job).count("LAMBDA_KWARGS") == 1
        assert json.loads(env_of(job)["LAMBDA_KWARGS"]) == {"a": 1}
        assert JobBuilder.shadowed_env(task) == ["LAMBDA_KWARGS"]

    def test_spec_fields(self):
        """Test restart policy, deadline, retries and retention"""
        job = JobBuilder().build(make_task(timeout=120), {}, identity)
        pod_spec = job["spec"]["template"]["spec"]

        assert job["apiVersion"] == "batch/v1"
        assert job["kind"] == "Job"
        assert job["spec"]["backoffLimit"] == 0
        assert job["spec"]["ttlSecondsAfterFinished"] == 3600
        assert pod_spec["restartPolicy"] == "Never"
        assert pod_spec["activeDeadlineSeconds"] == 120
        assert pod_spec["containers"][0]["name"] == "task"

    def test_ttl_disabled(self):
        """Test retention can be left to the cluster"""
        job = JobBuilder(ttl_seconds_after_finished=None).build(make_task(), {}, identity)

        assert "ttlSecondsAfterFinished" not in job["spec"]

    def test_container_image_and_resources(self):
        """Test image, pull policy and resources are copied from the Task"""
        task = make_task(
            image="registry.local/img:2",
            imagePullPolicy="Always",
            resources={"limits": {"cpu": "500m", "memory": "256Mi"}, "requests": {"cpu": "100m"}},
        )

        container = JobBuilder().build(task, {}, identity)["spec"]["template"]["spec"]["containers"][0]

        assert container["image"] == "registry.local/img:2"
        assert container["imagePullPolicy"] == "Always"
        assert container["resources"] == {
            "limits": {"cpu": "500m", "memory": "256Mi"},
            "requests": {"cpu": "100m"},
        }

    def test_no_resources(self):
        """Test the resources block is omitted when the Task sets none"""
        container = JobBuilder().build(make_task(), {}, identity)["spec"]["template"]["spec"]["containers"][0]

        assert "resources" not in container

    def test_metadata(self):
        """Test name, namespace, labels and annotations"""
        job = JobBuilder().build(make_task(), {}, identity)
        metadata = job["metadata"]

        assert metadata["name"] == identity.job_name
        assert metadata["namespace"] == "media"
        assert metadata["labels"] == {
            "app": "lambda-task",
            "task": "image-processor",
            "invocation-key": identity.invocation_key,
        }
        assert metadata["annotations"]["lambda.example.com/request-id"] == "req-42"
        assert job["spec"]["template"]["metadata"]["labels"] == metadata["labels"]

    def test_long_task_label_trimmed(self):
        """Test the task label value fits the 63 character limit"""
        long_identity = IdentityGenerator().generate("media", "x" * 70 + "-", "r")

        job = JobBuilder().build(make_task(), {}, long_identity)

        assert len(job["metadata"]["labels"]["task"]) <= 63
        assert job["metadata"]["annotations"]["lambda.example.com/task"] == "x" * 70 + "-"

    def test_build_is_pure(self):
        """Test two builds of the same input are equal"""
        builder = JobBuilder()
        task = make_task(defaultArgs={"a": 1})

        assert builder.build(task, {"b": 2}, identity) == builder.build(task, {"b": 2}, identity)


class TestProvenance:
    """Test Job provenance matching"""

    def test_matches_own_job(self):
        """Test a built Job matches its identity"""
        job = JobBuilder().build(make_task(), {}, identity)

        assert JobBuilder.matches_provenance(job, identity)

    def test_other_request_does_not_match(self):
        """Test another request id does not match"""
        job = JobBuilder().build(make_task(), {}, identity)
        other = IdentityGenerator().generate("media", "image-processor", "req-43")

        assert not JobBuilder.matches_provenance(job, other)

    def test_unannotated_job_does_not_match(self):
        """Test a foreign Job without annotations does not match"""
        assert not JobBuilder.matches_provenance({"metadata": {"name": identity.job_name}}, identity)
