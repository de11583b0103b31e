"""AWS implementation of the provisioning API.

Stacks are applied through CloudFormation change sets; compute, network and
storage resources are read and patched through EC2, roles through IAM and DNS
records through Route53.
"""

import uuid
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stackwarden.provisioning.base import (
    ChangePreview,
    ChangeType,
    InstanceState,
    ProviderStackStatus,
    ProvisioningAPI,
    ResourceChange,
    StackDescription,
)
from stackwarden.state.models import ResourceKind
from stackwarden.utils.aws_client import AWSClientManager
from stackwarden.utils.errors import (
    Diagnostic,
    ErrorContext,
    ProviderError,
    ResourceUnavailableError,
    ValidationError,
    error_handler,
)
from stackwarden.utils.logging import get_logger
from stackwarden.utils.polling import Poller
from stackwarden.utils.retry import RetryStrategy

logger = get_logger(__name__)

# ROLLBACK_COMPLETE means the first create failed and nothing usable is left;
# UPDATE_ROLLBACK_COMPLETE means the previous version is still live.
STACK_STATUS_MAP = {
    'CREATE_COMPLETE': ProviderStackStatus.SUCCEEDED,
    'UPDATE_COMPLETE': ProviderStackStatus.SUCCEEDED,
    'IMPORT_COMPLETE': ProviderStackStatus.SUCCEEDED,
    'UPDATE_ROLLBACK_COMPLETE': ProviderStackStatus.ROLLED_BACK,
    'IMPORT_ROLLBACK_COMPLETE': ProviderStackStatus.ROLLED_BACK,
    'ROLLBACK_COMPLETE': ProviderStackStatus.FAILED,
    'CREATE_FAILED': ProviderStackStatus.FAILED,
    'ROLLBACK_FAILED': ProviderStackStatus.FAILED,
    'UPDATE_FAILED': ProviderStackStatus.FAILED,
    'UPDATE_ROLLBACK_FAILED': ProviderStackStatus.FAILED,
    'IMPORT_ROLLBACK_FAILED': ProviderStackStatus.FAILED,
    'DELETE_FAILED': ProviderStackStatus.FAILED,
    'DELETE_COMPLETE': ProviderStackStatus.DELETED,
    'REVIEW_IN_PROGRESS': ProviderStackStatus.NOT_FOUND,
}

INSTANCE_STATE_MAP = {
    'running': InstanceState.RUNNING,
    'stopped': InstanceState.STOPPED,
    'pending': InstanceState.TRANSITIONING,
    'stopping': InstanceState.TRANSITIONING,
    'shutting-down': InstanceState.TRANSITIONING,
}

NO_CHANGES_REASONS = (
    "didn't contain changes",
    "No updates are to be performed",
)

LIVE_INSTANCE_STATES = ['pending', 'running', 'stopping', 'stopped']


def _tags(items: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    return {tag['Key']: tag['Value'] for tag in items or []}


def _record_name(name: str) -> str:
    return name if name.endswith('.') else f"{name}."


class CloudFormationProvisioningAPI(ProvisioningAPI):
    """Provisioning API backed by CloudFormation, EC2, IAM and Route53."""

    CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM']

    def __init__(
        self,
        client_manager: AWSClientManager,
        retry_strategy: Optional[RetryStrategy] = None,
        change_set_poller: Optional[Poller] = None
    ):
        """Initialize the adapter.

        Args:
            client_manager: Client manager holding the session to use
            retry_strategy: Backoff for read calls; mutating calls are never retried
            change_set_poller: Poller used while a change set is being computed
        """
        self.client_manager = client_manager
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.change_set_poller = change_set_poller or Poller(
            initial_interval=2.0, max_interval=10.0, timeout=300.0
        )

    def _call(self, service: str, operation: str, read: bool = True, **kwargs) -> Dict[str, Any]:
        """Invoke a client method, converting provider errors.

        Read calls go through the retry strategy.
        """
        method = getattr(self.client_manager.get_client(service), operation)
        try:
            if read:
                return self.retry_strategy.execute_with_retry(method, **kwargs)
            return method(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise error_handler.handle_exception(
                e,
                ErrorContext(provider_service=service, provider_operation=operation)
            ) from e

    @staticmethod
    def _error_code(error: Exception) -> Optional[str]:
        cause = getattr(error, 'cause', None)
        if isinstance(cause, ClientError):
            return cause.response.get('Error', {}).get('Code')
        return None

    # Stacks

    def _stack_exists(self, stack_name: str, operation: str) -> bool:
        """Whether a change set for the stack must be an UPDATE.

        Raises:
            ProviderError: If a failed create left the stack in ROLLBACK_COMPLETE,
                which accepts neither an UPDATE nor a CREATE change set
        """
        description = self.find_stack(stack_name)
        if description is not None and description.raw_status == 'ROLLBACK_COMPLETE':
            raise ProviderError(
                f"Stack {stack_name} is in ROLLBACK_COMPLETE after a failed create and cannot be updated",
                context=ErrorContext(stack=stack_name, operation=operation),
                suggestions=[f"Run 'stackwarden destroy {stack_name}', then deploy it again"],
            )
        return description is not None

    def _create_change_set(
        self,
        stack_name: str,
        template_body: str,
        parameters: Dict[str, str],
        change_set_type: str
    ) -> Dict[str, Any]:
        change_set_name = f"stackwarden-{uuid.uuid4().hex[:12]}"
        response = self._call(
            'cloudformation', 'create_change_set', read=False,
            StackName=stack_name,
            ChangeSetName=change_set_name,
            ChangeSetType=change_set_type,
            TemplateBody=template_body,
            Parameters=[
                {'ParameterKey': key, 'ParameterValue': value}
                for key, value in sorted(parameters.items())
            ],
            Capabilities=self.CAPABILITIES,
        )
        description = self.change_set_poller.poll(
            lambda: self._call(
                'cloudformation', 'describe_change_set',
                ChangeSetName=change_set_name, StackName=stack_name
            ),
            lambda cs: cs['Status'] in ('CREATE_COMPLETE', 'FAILED'),
            description=f"change set for {stack_name}",
        )
        description['_Name'] = change_set_name
        description['_StackId'] = response.get('StackId')
        return description

    @staticmethod
    def _is_empty_change_set(description: Dict[str, Any]) -> bool:
        reason = description.get('StatusReason') or ''
        return description['Status'] == 'FAILED' and any(r in reason for r in NO_CHANGES_REASONS)

    def preview_changes(
        self,
        stack_name: str,
        template_body: str,
        parameters: Dict[str, str]
    ) -> ChangePreview:
        """Compute the change set for an existing stack and discard it.

        A stack that does not exist yet is reported as a single stack-level
        addition, since no change set can be computed without creating it.

        Raises:
            ProviderError: If the stack is left in ROLLBACK_COMPLETE
        """
        if not self._stack_exists(stack_name, 'preview'):
            return ChangePreview(
                stack_name=stack_name,
                changes=[ResourceChange(stack_name, 'AWS::CloudFormation::Stack', ChangeType.ADD)]
            )

        description = self._create_change_set(stack_name, template_body, parameters, 'UPDATE')
        try:
            if self._is_empty_change_set(description):
                return ChangePreview(stack_name=stack_name)
            if description['Status'] == 'FAILED':
                raise ProviderError(
                    f"Change set for {stack_name} failed: {description.get('StatusReason')}",
                    context=ErrorContext(stack=stack_name, operation='preview')
                )
            changes = []
            for change in description.get('Changes', []):
                detail = change.get('ResourceChange', {})
                changes.append(ResourceChange(
                    logical_id=detail.get('LogicalResourceId', ''),
                    resource_type=detail.get('ResourceType', ''),
                    change_type=ChangeType(detail.get('Action', 'Modify')),
                    replacement=detail.get('Replacement') in ('True', 'Conditional'),
                ))
            return ChangePreview(stack_name=stack_name, changes=changes)
        finally:
            self._call(
                'cloudformation', 'delete_change_set', read=False,
                ChangeSetName=description['_Name'], StackName=stack_name
            )

    def submit(
        self,
        stack_name: str,
        template_body: str,
        parameters: Dict[str, str]
    ) -> str:
        change_set_type = 'UPDATE' if self._stack_exists(stack_name, 'submit') else 'CREATE'
        description = self._create_change_set(stack_name, template_body, parameters, change_set_type)
        if description['Status'] == 'FAILED':
            raise ProviderError(
                f"Change set for {stack_name} failed: {description.get('StatusReason')}",
                context=ErrorContext(stack=stack_name, operation='submit')
            )

        self._call(
            'cloudformation', 'execute_change_set', read=False,
            ChangeSetName=description['_Name'], StackName=stack_name
        )
        stack_id = description.get('StackId') or description['_StackId']
        logger.info(f"Executing change set {description['_Name']} on {stack_name}")
        return stack_id

    def describe_stack(self, stack_name: str) -> StackDescription:
        try:
            response = self._call('cloudformation', 'describe_stacks', StackName=stack_name)
        except ProviderError as e:
            if self._error_code(e) == 'ValidationError' and 'does not exist' in e.message:
                return StackDescription(name=stack_name, status=ProviderStackStatus.NOT_FOUND)
            raise

        stack = response['Stacks'][0]
        raw_status = stack['StackStatus']
        if raw_status.endswith('_IN_PROGRESS') and raw_status != 'REVIEW_IN_PROGRESS':
            status = ProviderStackStatus.IN_PROGRESS
        else:
            status = STACK_STATUS_MAP.get(raw_status, ProviderStackStatus.FAILED)

        description = StackDescription(
            name=stack_name,
            status=status,
            stack_id=stack.get('StackId'),
            raw_status=raw_status,
            outputs={o['OutputKey']: o['OutputValue'] for o in stack.get('Outputs', [])},
        )
        if not status.is_terminal or not description.exists:
            return description

        resources = self._call('cloudformation', 'describe_stack_resources', StackName=stack_name)
        description.resources = {
            r['LogicalResourceId']: r['PhysicalResourceId']
            for r in resources.get('StackResources', [])
            if r.get('PhysicalResourceId')
        }
        if status in (ProviderStackStatus.FAILED, ProviderStackStatus.ROLLED_BACK):
            description.failures = self._failure_events(stack_name)
        return description

    def _failure_events(self, stack_name: str) -> List[Diagnostic]:
        """Resource-level failures of the most recent stack operation."""
        events = self._call('cloudformation', 'describe_stack_events', StackName=stack_name)
        failures = []
        for event in events.get('StackEvents', []):
            logical_id = event.get('LogicalResourceId')
            status = event.get('ResourceStatus', '')
            if logical_id == stack_name and status in ('CREATE_IN_PROGRESS', 'UPDATE_IN_PROGRESS'):
                break
            if status.endswith('_FAILED') and logical_id != stack_name:
                failures.append(Diagnostic(
                    kind='ResourceFailed',
                    message=event.get('ResourceStatusReason', status),
                    resource_id=logical_id,
                    operation=status,
                ))
        failures.reverse()
        return failures

    def delete_stack(self, stack_name: str) -> None:
        self._call('cloudformation', 'delete_stack', read=False, StackName=stack_name)
        logger.info(f"Requested deletion of {stack_name}")

    # Resources

    def describe_resource(self, kind: ResourceKind, physical_id: str) -> Dict[str, Any]:
        if not physical_id:
            raise ResourceUnavailableError(f"{kind.value} resource has no physical id")

        try:
            if kind == ResourceKind.COMPUTE:
                return self._describe_instance(physical_id)
            if kind == ResourceKind.ROLE:
                return self._describe_role(physical_id)
            if kind == ResourceKind.NETWORK:
                vpcs = self._call('ec2', 'describe_vpcs', VpcIds=[physical_id])['Vpcs']
                if not vpcs:
                    raise ResourceUnavailableError(f"Network {physical_id} not found")
                return {'cidr_block': vpcs[0].get('CidrBlock'), 'tags': _tags(vpcs[0].get('Tags'))}
            if kind == ResourceKind.STORAGE:
                volumes = self._call('ec2', 'describe_volumes', VolumeIds=[physical_id])['Volumes']
                if not volumes:
                    raise ResourceUnavailableError(f"Volume {physical_id} not found")
                volume = volumes[0]
                return {
                    'size': volume.get('Size'),
                    'volume_type': volume.get('VolumeType'),
                    'encrypted': volume.get('Encrypted', False),
                    'tags': _tags(volume.get('Tags')),
                }
            return self._describe_record(physical_id)
        except ProviderError as e:
            if self._error_code(e) in ('InvalidVpcID.NotFound', 'InvalidVolume.NotFound', 'NoSuchEntity'):
                raise ResourceUnavailableError(
                    f"{kind.value} resource {physical_id} not found", cause=e
                ) from e
            raise

    def _describe_instance(self, instance_id: str) -> Dict[str, Any]:
        reservations = self._call('ec2', 'describe_instances', InstanceIds=[instance_id])['Reservations']
        if not reservations or not reservations[0]['Instances']:
            raise ResourceUnavailableError(f"Instance {instance_id} not found")
        instance = reservations[0]['Instances'][0]
        if instance['State']['Name'] == 'terminated':
            raise ResourceUnavailableError(f"Instance {instance_id} is terminated")

        profile = instance.get('IamInstanceProfile', {}).get('Arn')
        return {
            'instance_type': instance.get('InstanceType'),
            'role': profile.split('/')[-1] if profile else None,
            'security_groups': sorted(g['GroupId'] for g in instance.get('SecurityGroups', [])),
            'subnet_id': instance.get('SubnetId'),
            'public_ip': instance.get('PublicIpAddress'),
            'tags': _tags(instance.get('Tags')),
        }

    def _describe_role(self, role_name: str) -> Dict[str, Any]:
        role = self._call('iam', 'get_role', RoleName=role_name)['Role']
        attached = self._call('iam', 'list_attached_role_policies', RoleName=role_name)
        return {
            'path': role.get('Path'),
            'description': role.get('Description'),
            'max_session_duration': role.get('MaxSessionDuration'),
            'managed_policies': sorted(p['PolicyArn'] for p in attached.get('AttachedPolicies', [])),
        }

    def _lookup_record(self, zone_id: str, name: str, record_type: str) -> Optional[Dict[str, Any]]:
        response = self._call(
            'route53', 'list_resource_record_sets',
            HostedZoneId=zone_id,
            StartRecordName=name,
            StartRecordType=record_type,
            MaxItems='1',
        )
        for record in response.get('ResourceRecordSets', []):
            if _record_name(record['Name']) == _record_name(name) and record['Type'] == record_type:
                return record
        return None

    def _describe_record(self, physical_id: str) -> Dict[str, Any]:
        zone_id, name, record_type = self._split_record_id(physical_id)
        record = self._lookup_record(zone_id, name, record_type)
        if record is None:
            raise ResourceUnavailableError(f"DNS record {name} ({record_type}) not found in {zone_id}")
        values = [r['Value'] for r in record.get('ResourceRecords', [])]
        return {
            'type': record_type,
            'ttl': record.get('TTL'),
            'value': values[0] if len(values) == 1 else values,
        }

    @staticmethod
    def _split_record_id(physical_id: str):
        parts = physical_id.split('|')
        if len(parts) != 3:
            raise ValidationError(f"DNS record id must be 'zone|name|type': {physical_id}")
        return parts[0], _record_name(parts[1]), parts[2]

    def find_resource(self, kind: ResourceKind, selector: Dict[str, str]) -> Optional[str]:
        """Locate a resource by selector.

        EC2-backed kinds treat selector keys as EC2 filter names (for example
        ``tag:Name``). Roles use ``name``; DNS records use ``hosted_zone_id``,
        ``name`` and optionally ``type`` (default ``A``).

        Raises:
            ValidationError: If the selector matches more than one resource
        """
        if kind == ResourceKind.ROLE:
            try:
                role = self._call('iam', 'get_role', RoleName=selector['name'])['Role']
            except ProviderError as e:
                if self._error_code(e) == 'NoSuchEntity':
                    return None
                raise
            return role['RoleName']

        if kind == ResourceKind.DNS_RECORD:
            record_type = selector.get('type', 'A')
            record = self._lookup_record(selector['hosted_zone_id'], selector['name'], record_type)
            if record is None:
                return None
            return f"{selector['hosted_zone_id']}|{_record_name(selector['name'])}|{record_type}"

        filters = [{'Name': key, 'Values': [value]} for key, value in sorted(selector.items())]
        if kind == ResourceKind.COMPUTE:
            filters.append({'Name': 'instance-state-name', 'Values': LIVE_INSTANCE_STATES})
            response = self._call('ec2', 'describe_instances', Filters=filters)
            ids = [i['InstanceId'] for r in response['Reservations'] for i in r['Instances']]
        elif kind == ResourceKind.NETWORK:
            ids = [v['VpcId'] for v in self._call('ec2', 'describe_vpcs', Filters=filters)['Vpcs']]
        else:
            ids = [v['VolumeId'] for v in self._call('ec2', 'describe_volumes', Filters=filters)['Volumes']]

        if len(ids) > 1:
            raise ValidationError(
                f"Selector {selector} matches {len(ids)} {kind.value} resources: {', '.join(sorted(ids))}",
                suggestions=['Narrow the selector so it names exactly one resource']
            )
        return ids[0] if ids else None

    def patch_resource(
        self,
        kind: ResourceKind,
        physical_id: str,
        operation: str,
        parameters: Dict[str, Any]
    ) -> None:
        logger.info(f"Patching {kind.value} {physical_id}: {operation}")

        if kind == ResourceKind.COMPUTE and operation == 'replace-instance-profile-association':
            self._replace_instance_profile(physical_id, parameters.get('role'))
        elif kind == ResourceKind.COMPUTE and operation == 'modify-instance-attribute':
            self._call(
                'ec2', 'modify_instance_attribute', read=False,
                InstanceId=physical_id, Groups=list(parameters['security_groups'])
            )
        elif kind == ResourceKind.DNS_RECORD and operation == 'upsert-record':
            self._upsert_record(physical_id, parameters)
        else:
            raise ValidationError(f"Operation {operation} is not supported for {kind.value} resources")

    def _replace_instance_profile(self, instance_id: str, profile_name: Optional[str]) -> None:
        associations = self._call(
            'ec2', 'describe_iam_instance_profile_associations',
            Filters=[
                {'Name': 'instance-id', 'Values': [instance_id]},
                {'Name': 'state', 'Values': ['associated']},
            ]
        ).get('IamInstanceProfileAssociations', [])

        if profile_name is None:
            for association in associations:
                self._call(
                    'ec2', 'disassociate_iam_instance_profile', read=False,
                    AssociationId=association['AssociationId']
                )
        elif associations:
            self._call(
                'ec2', 'replace_iam_instance_profile_association', read=False,
                IamInstanceProfile={'Name': profile_name},
                AssociationId=associations[0]['AssociationId']
            )
        else:
            self._call(
                'ec2', 'associate_iam_instance_profile', read=False,
                IamInstanceProfile={'Name': profile_name},
                InstanceId=instance_id
            )

    def _upsert_record(self, physical_id: str, parameters: Dict[str, Any]) -> None:
        zone_id, name, record_type = self._split_record_id(physical_id)
        values = parameters['value']
        if not isinstance(values, list):
            values = [values]
        self._call(
            'route53', 'change_resource_record_sets', read=False,
            HostedZoneId=zone_id,
            ChangeBatch={
                'Comment': 'stackwarden drift reconciliation',
                'Changes': [{
                    'Action': 'UPSERT',
                    'ResourceRecordSet': {
                        'Name': name,
                        'Type': record_type,
                        'TTL': int(parameters.get('ttl') or 300),
                        'ResourceRecords': [{'Value': str(v)} for v in values],
                    },
                }],
            }
        )

    # Instances

    def get_instance_state(self, physical_id: str) -> InstanceState:
        if not physical_id:
            return InstanceState.UNKNOWN
        try:
            reservations = self._call(
                'ec2', 'describe_instances', InstanceIds=[physical_id]
            )['Reservations']
        except (ProviderError, ResourceUnavailableError) as e:
            logger.warning(f"Could not read state of {physical_id}: {e.message}")
            return InstanceState.UNKNOWN

        if not reservations or not reservations[0]['Instances']:
            return InstanceState.UNKNOWN
        name = reservations[0]['Instances'][0]['State']['Name']
        return INSTANCE_STATE_MAP.get(name, InstanceState.UNKNOWN)

    def start_instance(self, physical_id: str) -> None:
        self._call('ec2', 'start_instances', read=False, InstanceIds=[physical_id])

    def stop_instance(self, physical_id: str) -> None:
        self._call('ec2', 'stop_instances', read=False, InstanceIds=[physical_id])

    def restart_instance(self, physical_id: str) -> None:
        self._call('ec2', 'reboot_instances', read=False, InstanceIds=[physical_id])

    def close(self) -> None:
        self.client_manager.close()
