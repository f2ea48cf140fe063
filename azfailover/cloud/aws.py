#!/usr/bin/env python3
"""
AWS collaborators

boto3-backed implementations of the controller's collaborator interfaces:
- ECS as the compute cluster API (services, tasks)
- EC2 as the network topology API (subnets, ENIs)
- SNS as the notification channel
"""

import logging
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ApplyError, ClusterApiError, ResolutionError, ServiceLookupError
from .interfaces import (
    ComputeClusterApi,
    NetworkTopologyApi,
    Notifier,
    PlacementRecord,
    ServiceDescriptor,
    ServiceNetworkConfig,
    Subnet,
)
from .notifier import LoggingNotifier

logger = logging.getLogger("azfailover.aws")

NOT_FOUND_CODES = ("ClusterNotFoundException", "ServiceNotFoundException")


def get_aws_clients(region: str) -> dict:
    """Initialize the AWS service clients used by the controller."""
    return {
        "ecs": boto3.client("ecs", region_name=region),
        "ec2": boto3.client("ec2", region_name=region),
        "sns": boto3.client("sns", region_name=region),
    }


def _error_code(error: Exception) -> str:
    # BotoCoreError (connection, credentials, timeouts) carries no service response
    if not isinstance(error, ClientError):
        return ""
    return error.response.get("Error", {}).get("Code", "")


class EcsClusterApi(ComputeClusterApi):
    """ECS services and tasks on awsvpc networking."""

    def __init__(self, ecs_client):
        self.ecs = ecs_client

    def describe_service(self, cluster: str, service: str) -> ServiceDescriptor:
        try:
            response = self.ecs.describe_services(cluster=cluster, services=[service])
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ServiceLookupError(
                    f"Cluster not found: {e}", cluster=cluster, service=service, step="describe"
                ) from e
            raise ClusterApiError(
                f"describe_services failed: {e}", cluster=cluster, service=service, step="describe"
            ) from e

        services = response.get("services", [])
        if not services or services[0].get("status") == "INACTIVE":
            reasons = [f.get("reason", "") for f in response.get("failures", [])]
            raise ServiceLookupError(
                f"Service not found ({', '.join(reasons) or 'INACTIVE'})",
                cluster=cluster,
                service=service,
                step="describe",
            )

        data = services[0]
        awsvpc = data.get("networkConfiguration", {}).get("awsvpcConfiguration")
        network = None
        if awsvpc:
            network = ServiceNetworkConfig(
                subnets=tuple(awsvpc.get("subnets", [])),
                security_groups=tuple(awsvpc.get("securityGroups", [])),
                assign_public_ip=awsvpc.get("assignPublicIp", "DISABLED"),
            )

        return ServiceDescriptor(
            cluster=cluster,
            service=service,
            status=data.get("status", "UNKNOWN"),
            desired_count=data.get("desiredCount", 0),
            running_count=data.get("runningCount", 0),
            network=network,
        )

    def list_running_instances(self, cluster: str, service: str) -> List[str]:
        task_arns = []
        try:
            paginator = self.ecs.get_paginator("list_tasks")
            for page in paginator.paginate(
                cluster=cluster, serviceName=service, desiredStatus="RUNNING"
            ):
                task_arns.extend(page.get("taskArns", []))
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ServiceLookupError(
                    f"Cannot list tasks: {e}", cluster=cluster, service=service, step="list_tasks"
                ) from e
            raise ClusterApiError(
                f"list_tasks failed: {e}", cluster=cluster, service=service, step="list_tasks"
            ) from e
        return task_arns

    def update_service_network_config(
        self,
        cluster: str,
        service: str,
        config: ServiceNetworkConfig,
        force_redeploy: bool = True,
    ) -> None:
        try:
            self.ecs.update_service(
                cluster=cluster,
                service=service,
                networkConfiguration=config.to_request(),
                forceNewDeployment=force_redeploy,
            )
        except (ClientError, BotoCoreError) as e:
            raise ApplyError(
                f"update_service rejected: {e}", cluster=cluster, service=service, step="apply"
            ) from e

    def stop_instance(self, cluster: str, instance_id: str, reason: str) -> None:
        try:
            self.ecs.stop_task(cluster=cluster, task=instance_id, reason=reason)
        except (ClientError, BotoCoreError) as e:
            raise ClusterApiError(
                f"stop_task failed for {instance_id}: {e}", cluster=cluster, step="evict"
            ) from e


class Ec2NetworkApi(NetworkTopologyApi):
    """
    Subnet and placement lookups.

    A task's placement is read from the ENI attached to it, so this needs the
    ECS client as well as EC2.
    """

    def __init__(self, ec2_client, ecs_client):
        self.ec2 = ec2_client
        self.ecs = ecs_client

    def describe_subnets(self, availability_zone: str) -> List[Subnet]:
        subnets = []
        try:
            paginator = self.ec2.get_paginator("describe_subnets")
            for page in paginator.paginate(
                Filters=[{"Name": "availability-zone", "Values": [availability_zone]}]
            ):
                for item in page.get("Subnets", []):
                    subnets.append(
                        Subnet(
                            subnet_id=item["SubnetId"],
                            availability_zone=item.get("AvailabilityZone", availability_zone),
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise ClusterApiError(f"describe_subnets failed: {e}", step="plan") from e
        return subnets

    def resolve_placement(self, cluster: str, instance_id: str) -> PlacementRecord:
        eni_id = self._network_interface_id(cluster, instance_id)
        try:
            response = self.ec2.describe_network_interfaces(NetworkInterfaceIds=[eni_id])
        except (ClientError, BotoCoreError) as e:
            raise ResolutionError(
                f"Network interface {eni_id} lookup failed: {e}",
                instance_id=instance_id,
                cluster=cluster,
            ) from e

        interfaces = response.get("NetworkInterfaces", [])
        if not interfaces:
            raise ResolutionError(
                f"Network interface {eni_id} is gone", instance_id=instance_id, cluster=cluster
            )
        interface = interfaces[0]
        return PlacementRecord(
            instance_id=instance_id,
            subnet_id=interface["SubnetId"],
            availability_zone=interface["AvailabilityZone"],
        )

    def _network_interface_id(self, cluster: str, instance_id: str) -> str:
        try:
            response = self.ecs.describe_tasks(cluster=cluster, tasks=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ResolutionError(
                f"describe_tasks failed: {e}", instance_id=instance_id, cluster=cluster
            ) from e

        tasks = response.get("tasks", [])
        if not tasks:
            raise ResolutionError(
                "Task no longer exists", instance_id=instance_id, cluster=cluster
            )

        for attachment in tasks[0].get("attachments", []):
            if attachment.get("type") != "ElasticNetworkInterface":
                continue
            for detail in attachment.get("details", []):
                if detail.get("name") == "networkInterfaceId" and detail.get("value"):
                    return detail["value"]

        raise ResolutionError(
            "No network interface attached yet", instance_id=instance_id, cluster=cluster
        )


class SnsNotifier(Notifier):
    def __init__(self, sns_client, topic_arn: str):
        self.sns = sns_client
        self.topic_arn = topic_arn

    def publish(self, subject: str, message: str) -> None:
        logger.info(f"Sending SNS alert: {subject}")
        # SNS caps subjects at 100 characters
        self.sns.publish(TopicArn=self.topic_arn, Subject=subject[:100], Message=message)


def build_collaborators(region: str, sns_topic_arn: Optional[str] = None):
    """Return (compute, network, notifier) wired to one region."""
    clients = get_aws_clients(region)
    compute = EcsClusterApi(clients["ecs"])
    network = Ec2NetworkApi(clients["ec2"], clients["ecs"])
    if sns_topic_arn:
        notifier = SnsNotifier(clients["sns"], sns_topic_arn)
    else:
        notifier = LoggingNotifier()
    return compute, network, notifier
