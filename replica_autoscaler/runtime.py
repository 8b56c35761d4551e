"""
Runtime controllers: report and change how many replicas a service runs.

ComposeRuntimeController drives docker-compose services.
EC2RuntimeController manages a per-service pool of EC2 worker instances.
"""

import logging
import os
import shlex
import subprocess
import time
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from replica_autoscaler.errors import RuntimeControlError
from replica_autoscaler.models import ServiceIdentity

logger = logging.getLogger()


def run_command(args: List[str], timeout: float) -> str:
    """Run a command and return stdout, raising RuntimeControlError on failure."""
    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()
        raise RuntimeControlError(f"{' '.join(args)} exited with {e.returncode}: {stderr}") from e
    except subprocess.TimeoutExpired as e:
        raise RuntimeControlError(f"{' '.join(args)} timed out after {timeout}s") from e
    except OSError as e:
        raise RuntimeControlError(f"Failed to run {args[0]}: {e}") from e
    return completed.stdout


class ComposeRuntimeController:
    """
    Scales docker-compose services with `up --scale`.

    operation_timeout, when set, bounds a whole set_replica_count call
    (scale command, verification polls and settle time together).
    """

    def __init__(
        self,
        compose_file: str = "docker-compose.prod.yml",
        compose_command: str = "docker-compose",
        command_timeout: float = 120.0,
        settle_seconds: float = 10.0,
        poll_interval: float = 2.0,
        operation_timeout: Optional[float] = None,
        runner=run_command,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.compose_file = compose_file
        self.compose_command = shlex.split(compose_command)
        self.command_timeout = command_timeout
        self.settle_seconds = settle_seconds
        self.poll_interval = poll_interval
        self.operation_timeout = operation_timeout
        self.runner = runner
        self.sleep = sleep
        self.clock = clock

    def _compose(self, *args: str) -> List[str]:
        return [*self.compose_command, "-f", self.compose_file, *args]

    def _time_left(self, service: ServiceIdentity, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.command_timeout
        left = deadline - self.clock()
        if left <= 0:
            raise RuntimeControlError(f"Scaling {service} ran out of its {self.operation_timeout}s budget")
        return min(self.command_timeout, left)

    def container_ids(self, service: ServiceIdentity, timeout: Optional[float] = None) -> List[str]:
        output = self.runner(self._compose("ps", "-q", service), timeout or self.command_timeout)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def get_replica_count(self, service: ServiceIdentity) -> int:
        return len(self.container_ids(service))

    def set_replica_count(self, service: ServiceIdentity, target: int) -> None:
        logger.info(f"Scaling {service} to {target} replicas via {self.compose_file}")
        deadline = self.clock() + self.operation_timeout if self.operation_timeout else None
        self.runner(
            self._compose("up", "-d", "--no-recreate", "--scale", f"{service}={target}", service),
            self._time_left(service, deadline),
        )

        # Wait for containers to be ready
        waited = 0.0
        actual = len(self.container_ids(service, self._time_left(service, deadline)))
        while actual != target and waited < self.settle_seconds:
            if deadline is not None and self.clock() + self.poll_interval >= deadline:
                break
            self.sleep(self.poll_interval)
            waited += self.poll_interval
            actual = len(self.container_ids(service, self._time_left(service, deadline)))

        if actual != target:
            raise RuntimeControlError(f"Failed to scale {service}. Expected: {target}, Actual: {actual}")
        logger.info(f"Verified {service} running {actual} replicas")


class EC2RuntimeController:
    """Manages a pool of EC2 worker instances per service."""

    def __init__(self, ec2=None, launch_template: Optional[dict] = None, project: str = "autoscaler"):
        self.ec2 = ec2 or boto3.client("ec2")
        self.project = project

        # Configuration from environment
        template = launch_template or {}
        self.ami_id = template.get("ami_id") or os.environ.get("EC2_AMI_ID")
        self.instance_type = template.get("instance_type") or os.environ.get("WORKER_INSTANCE_TYPE", "t3.small")
        self.security_group_id = template.get("security_group_id") or os.environ.get("WORKER_SECURITY_GROUP")
        self.subnet_ids = [s for s in (template.get("subnet_ids") or [
            os.environ.get("SUBNET_1"),
            os.environ.get("SUBNET_2"),
        ]) if s]
        self.iam_profile = template.get("iam_profile") or os.environ.get("WORKER_IAM_PROFILE")
        self.key_name = template.get("key_name") or os.environ.get("SSH_KEY_NAME")
        self.user_data = template.get("user_data", "")

    def _get_ubuntu_ami(self) -> str:
        """Get latest Ubuntu 22.04 AMI."""
        response = self.ec2.describe_images(
            Owners=["099720109477"],  # Canonical
            Filters=[
                {"Name": "name", "Values": ["ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"]},
                {"Name": "virtualization-type", "Values": ["hvm"]},
                {"Name": "state", "Values": ["available"]},
            ]
        )

        # Sort by creation date and get the most recent
        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        if images:
            return images[0]["ImageId"]
        raise RuntimeControlError("No Ubuntu AMI found")

    def _instances(self, service: ServiceIdentity) -> List[dict]:
        response = self.ec2.describe_instances(
            Filters=[
                {"Name": "tag:Service", "Values": [service]},
                {"Name": "tag:ManagedBy", "Values": ["autoscaler"]},
                {"Name": "tag:Project", "Values": [self.project]},
                {"Name": "instance-state-name", "Values": ["running", "pending"]},
            ]
        )
        instances = []
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                instances.append({
                    "id": instance["InstanceId"],
                    "launch_time": instance["LaunchTime"],
                })
        return instances

    def get_replica_count(self, service: ServiceIdentity) -> int:
        """Get count of running worker instances for a service."""
        try:
            return len(self._instances(service))
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to get worker count for {service}: {e}")
            raise RuntimeControlError(f"Failed to count instances for {service}: {e}") from e

    def set_replica_count(self, service: ServiceIdentity, target: int) -> None:
        try:
            instances = self._instances(service)
            delta = target - len(instances)
            if delta > 0:
                self.launch_workers(service, delta)
            elif delta < 0:
                self.terminate_workers(instances, -delta)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to scale {service} to {target}: {e}")
            raise RuntimeControlError(f"EC2 scaling failed for {service}: {e}") from e

    def launch_workers(self, service: ServiceIdentity, count: int) -> List[str]:
        """Launch count new worker nodes for a service."""
        params = {
            "ImageId": self.ami_id or self._get_ubuntu_ami(),
            "InstanceType": self.instance_type,
            "MinCount": count,
            "MaxCount": count,
            "TagSpecifications": [{
                "ResourceType": "instance",
                "Tags": [
                    {"Key": "Name", "Value": f"{service}-worker-autoscaled"},
                    {"Key": "Service", "Value": service},
                    {"Key": "Project", "Value": self.project},
                    {"Key": "ManagedBy", "Value": "autoscaler"},
                ]
            }],
        }
        if self.security_group_id:
            params["SecurityGroupIds"] = [self.security_group_id]
        if self.subnet_ids:
            params["SubnetId"] = self.subnet_ids[0]
        if self.iam_profile:
            params["IamInstanceProfile"] = {"Name": self.iam_profile}
        if self.key_name:
            params["KeyName"] = self.key_name
        if self.user_data:
            params["UserData"] = self.user_data

        response = self.ec2.run_instances(**params)
        instance_ids = [i["InstanceId"] for i in response["Instances"]]
        if len(instance_ids) != count:
            raise RuntimeControlError(f"Requested {count} instances for {service}, got {len(instance_ids)}")
        logger.info(f"Launched worker instances for {service}: {instance_ids}")
        return instance_ids

    def terminate_workers(self, instances: List[dict], count: int) -> List[str]:
        """Terminate the count oldest workers."""
        # TODO: drain connections on the instance before terminating it
        oldest = sorted(instances, key=lambda x: x["launch_time"])[:count]
        instance_ids = [i["id"] for i in oldest]
        logger.info(f"Terminating workers: {instance_ids}")
        self.ec2.terminate_instances(InstanceIds=instance_ids)
        return instance_ids
