"""Tests for the AWS provisioning adapter using stubbed botocore clients."""

from datetime import datetime, timezone

import boto3
import pytest
from botocore.stub import ANY, Stubber

from stackwarden.credentials import Credentials
from stackwarden.provisioning.base import ChangeType, InstanceState, ProviderStackStatus
from stackwarden.provisioning.cloudformation import CloudFormationProvisioningAPI
from stackwarden.state.models import ResourceKind
from stackwarden.utils.aws_client import AWSClientManager
from stackwarden.utils.errors import ProviderError, ResourceUnavailableError, ValidationError
from stackwarden.utils.polling import Poller
from stackwarden.utils.retry import RetryStrategy

CREATED = datetime(2026, 1, 1, tzinfo=timezone.utc)
STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/network/1"


@pytest.fixture
def manager():
    session = boto3.Session(
        aws_access_key_id="testing", aws_secret_access_key="testing", region_name="us-east-1"
    )
    return AWSClientManager(region="us-east-1", session=session)


@pytest.fixture
def adapter(manager):
    return CloudFormationProvisioningAPI(
        manager,
        retry_strategy=RetryStrategy(max_retries=0),
        change_set_poller=Poller(initial_interval=0, max_interval=0, timeout=5),
    )


@pytest.fixture
def stubs(manager):
    stubbers = {}

    def stub(service):
        if service not in stubbers:
            stubbers[service] = Stubber(manager.get_client(service))
            stubbers[service].activate()
        return stubbers[service]

    yield stub
    for stubber in stubbers.values():
        stubber.assert_no_pending_responses()
        stubber.deactivate()


def stack_response(status, outputs=None):
    stack = {"StackName": "network", "StackId": STACK_ID, "CreationTime": CREATED, "StackStatus": status}
    if outputs:
        stack["Outputs"] = [{"OutputKey": k, "OutputValue": v} for k, v in outputs.items()]
    return {"Stacks": [stack]}


def resources_response(resources):
    return {"StackResources": [
        {
            "LogicalResourceId": logical_id,
            "PhysicalResourceId": physical_id,
            "ResourceType": "AWS::EC2::VPC",
            "Timestamp": CREATED,
            "ResourceStatus": "CREATE_COMPLETE",
        }
        for logical_id, physical_id in resources.items()
    ]}


def not_found(stubber):
    stubber.add_client_error(
        "describe_stacks",
        service_error_code="ValidationError",
        service_message="Stack with id network does not exist",
        http_status_code=400,
    )


class TestDescribeStack:
    """Test stack status mapping."""

    def test_missing_stack(self, adapter, stubs):
        not_found(stubs("cloudformation"))

        description = adapter.describe_stack("network")

        assert description.status == ProviderStackStatus.NOT_FOUND
        assert not description.exists

    def test_completed_stack(self, adapter, stubs):
        cfn = stubs("cloudformation")
        cfn.add_response("describe_stacks", stack_response("UPDATE_COMPLETE", {"VpcId": "vpc-123"}))
        cfn.add_response("describe_stack_resources", resources_response({"Vpc": "vpc-123"}))

        description = adapter.describe_stack("network")

        assert description.status == ProviderStackStatus.SUCCEEDED
        assert description.stack_id == STACK_ID
        assert description.outputs == {"VpcId": "vpc-123"}
        assert description.resources == {"Vpc": "vpc-123"}

    def test_in_progress_stack_skips_resources(self, adapter, stubs):
        stubs("cloudformation").add_response("describe_stacks", stack_response("UPDATE_IN_PROGRESS"))

        description = adapter.describe_stack("network")

        assert description.status == ProviderStackStatus.IN_PROGRESS

    def test_rolled_back_update_reports_failures(self, adapter, stubs):
        cfn = stubs("cloudformation")
        cfn.add_response("describe_stacks", stack_response("UPDATE_ROLLBACK_COMPLETE"))
        cfn.add_response("describe_stack_resources", resources_response({"Vpc": "vpc-123"}))
        event = {"StackId": STACK_ID, "StackName": "network", "Timestamp": CREATED}
        cfn.add_response("describe_stack_events", {"StackEvents": [
            dict(event, EventId="3", LogicalResourceId="network", ResourceStatus="UPDATE_ROLLBACK_COMPLETE"),
            dict(event, EventId="2", LogicalResourceId="Subnet", ResourceStatus="UPDATE_FAILED",
                 ResourceStatusReason="CIDR conflicts with another subnet"),
            dict(event, EventId="1", LogicalResourceId="network", ResourceStatus="UPDATE_IN_PROGRESS"),
            dict(event, EventId="0", LogicalResourceId="Old", ResourceStatus="CREATE_FAILED"),
        ]})

        description = adapter.describe_stack("network")

        assert description.status == ProviderStackStatus.ROLLED_BACK
        assert [d.resource_id for d in description.failures] == ["Subnet"]
        assert "CIDR conflicts" in description.failures[0].message

    def test_failed_first_create_counts_as_failed(self, adapter, stubs):
        cfn = stubs("cloudformation")
        cfn.add_response("describe_stacks", stack_response("ROLLBACK_COMPLETE"))
        cfn.add_response("describe_stack_resources", {"StackResources": []})
        cfn.add_response("describe_stack_events", {"StackEvents": []})

        assert adapter.describe_stack("network").status == ProviderStackStatus.FAILED


class TestChangeSets:
    """Test preview and submission through change sets."""

    def test_preview_of_new_stack_creates_nothing(self, adapter, stubs):
        not_found(stubs("cloudformation"))

        preview = adapter.preview_changes("network", "Resources: {}", {})

        assert [c.change_type for c in preview.changes] == [ChangeType.ADD]

    def test_preview_without_changes_is_empty(self, adapter, stubs):
        cfn = stubs("cloudformation")
        cfn.add_response("describe_stacks", stack_response("CREATE_COMPLETE"))
        cfn.add_response("describe_stack_resources", {"StackResources": []})
        cfn.add_response("create_change_set", {"Id": "cs-1", "StackId": STACK_ID}, {
            "StackName": "network",
            "ChangeSetName": ANY,
            "ChangeSetType": "UPDATE",
            "TemplateBody": "Resources: {}",
            "Parameters": [{"ParameterKey": "VpcCidr", "ParameterValue": "10.0.0.0/16"}],
            "Capabilities": ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
        })
        cfn.add_response("describe_change_set", {
            "Status": "FAILED",
            "StatusReason": "The submitted information didn't contain changes.",
        })
        cfn.add_response("delete_change_set", {})

        preview = adapter.preview_changes("network", "Resources: {}", {"VpcCidr": "10.0.0.0/16"})

        assert preview.is_empty

    def test_preview_lists_resource_changes(self, adapter, stubs):
        cfn = stubs("cloudformation")
        cfn.add_response("describe_stacks", stack_response("CREATE_COMPLETE"))
        cfn.add_response("describe_stack_resources", {"StackResources": []})
        cfn.add_response("create_change_set", {"Id": "cs-1", "StackId": STACK_ID})
        cfn.add_response("describe_change_set", {
            "Status": "CREATE_COMPLETE",
            "Changes": [{"Type": "Resource", "ResourceChange": {
                "Action": "Modify",
                "LogicalResourceId": "Subnet",
                "ResourceType": "AWS::EC2::Subnet",
                "Replacement": "True",
            }}],
        })
        cfn.add_response("delete_change_set", {})

        preview = adapter.preview_changes("network", "Resources: {}", {})

        assert len(preview.changes) == 1
        assert preview.changes[0].replacement
        assert str(preview.changes[0]) == "Modify Subnet [AWS::EC2::Subnet] (replacement)"

    def test_submit_new_stack(self, adapter, stubs):
        cfn = stubs("cloudformation")
        not_found(cfn)
        cfn.add_response("create_change_set", {"Id": "cs-1", "StackId": STACK_ID}, {
            "StackName": "network",
            "ChangeSetName": ANY,
            "ChangeSetType": "CREATE",
            "TemplateBody": "Resources: {}",
            "Parameters": [],
            "Capabilities": ANY,
        })
        cfn.add_response("describe_change_set", {"Status": "CREATE_COMPLETE"})
        cfn.add_response("execute_change_set", {})

        assert adapter.submit("network", "Resources: {}", {}) == STACK_ID

    def test_failed_first_create_is_not_updated(self, adapter, stubs):
        cfn = stubs("cloudformation")
        cfn.add_response("describe_stacks", stack_response("ROLLBACK_COMPLETE"))
        cfn.add_response("describe_stack_resources", {"StackResources": []})
        cfn.add_response("describe_stack_events", {"StackEvents": []})

        with pytest.raises(ProviderError) as exc_info:
            adapter.submit("network", "Resources: {}", {})

        assert "ROLLBACK_COMPLETE" in exc_info.value.message
        assert "stackwarden destroy network" in exc_info.value.suggestions[0]


class TestClose:
    """Test that closing drops held credentials."""

    def test_close_drops_clients_and_credentials(self):
        credentials = Credentials(role="deployer", access_key_id="AKIA", secret_access_key="secret")
        manager = AWSClientManager(region="us-east-1", credentials=credentials)
        adapter = CloudFormationProvisioningAPI(manager)
        manager.get_client("cloudformation")

        adapter.close()

        assert manager.credentials is None
        assert manager._session is None
        assert manager._clients == {}


class TestResources:
    """Test resource reads, lookups and patches."""

    def test_describe_instance(self, adapter, stubs):
        stubs("ec2").add_response("describe_instances", {"Reservations": [{"Instances": [{
            "InstanceId": "i-vpn",
            "InstanceType": "t3.micro",
            "State": {"Name": "running"},
            "IamInstanceProfile": {"Arn": "arn:aws:iam::123456789012:instance-profile/RoleA", "Id": "AIPA1"},
            "SecurityGroups": [{"GroupId": "sg-2", "GroupName": "b"}, {"GroupId": "sg-1", "GroupName": "a"}],
            "SubnetId": "subnet-1",
            "Tags": [{"Key": "Name", "Value": "vpn-nat"}],
        }]}]}, {"InstanceIds": ["i-vpn"]})

        config = adapter.describe_resource(ResourceKind.COMPUTE, "i-vpn")

        assert config["role"] == "RoleA"
        assert config["security_groups"] == ["sg-1", "sg-2"]
        assert config["tags"] == {"Name": "vpn-nat"}

    def test_terminated_instance_is_unavailable(self, adapter, stubs):
        stubs("ec2").add_response("describe_instances", {"Reservations": [{"Instances": [{
            "InstanceId": "i-vpn", "State": {"Name": "terminated"},
        }]}]})

        with pytest.raises(ResourceUnavailableError):
            adapter.describe_resource(ResourceKind.COMPUTE, "i-vpn")

    def test_missing_role_is_unavailable(self, adapter, stubs):
        stubs("iam").add_client_error("get_role", service_error_code="NoSuchEntity", http_status_code=404)

        with pytest.raises(ResourceUnavailableError):
            adapter.describe_resource(ResourceKind.ROLE, "VpnRole")

    def test_selector_matching_several_instances(self, adapter, stubs):
        stubs("ec2").add_response("describe_instances", {"Reservations": [
            {"Instances": [{"InstanceId": "i-1"}]},
            {"Instances": [{"InstanceId": "i-2"}]},
        ]})

        with pytest.raises(ValidationError):
            adapter.find_resource(ResourceKind.COMPUTE, {"tag:Name": "vpn-nat"})

    def test_selector_without_match(self, adapter, stubs):
        stubs("ec2").add_response("describe_instances", {"Reservations": []}, {
            "Filters": [
                {"Name": "tag:Name", "Values": ["vpn-nat"]},
                {"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]},
            ]
        })

        assert adapter.find_resource(ResourceKind.COMPUTE, {"tag:Name": "vpn-nat"}) is None

    def test_role_patch_replaces_association(self, adapter, stubs):
        ec2 = stubs("ec2")
        ec2.add_response("describe_iam_instance_profile_associations", {"IamInstanceProfileAssociations": [{
            "AssociationId": "iip-assoc-1", "InstanceId": "i-vpn", "State": "associated",
        }]})
        ec2.add_response("replace_iam_instance_profile_association", {}, {
            "IamInstanceProfile": {"Name": "RoleA"},
            "AssociationId": "iip-assoc-1",
        })

        adapter.patch_resource(
            ResourceKind.COMPUTE, "i-vpn", "replace-instance-profile-association",
            {"role": "RoleA", "from": "RoleA-v2"},
        )

    def test_unsupported_patch(self, adapter):
        with pytest.raises(ValidationError):
            adapter.patch_resource(ResourceKind.ROLE, "VpnRole", "attach-policy", {})

    def test_dns_record_id_must_have_three_parts(self, adapter):
        with pytest.raises(ValidationError):
            adapter.describe_resource(ResourceKind.DNS_RECORD, "Z1|vpn.example.com.")


class TestInstanceState:
    """Test instance state mapping."""

    @pytest.mark.parametrize("name,expected", [
        ("running", InstanceState.RUNNING),
        ("stopped", InstanceState.STOPPED),
        ("stopping", InstanceState.TRANSITIONING),
        ("terminated", InstanceState.UNKNOWN),
    ])
    def test_mapping(self, adapter, stubs, name, expected):
        stubs("ec2").add_response("describe_instances", {"Reservations": [{"Instances": [{
            "InstanceId": "i-vpn", "State": {"Name": name},
        }]}]})

        assert adapter.get_instance_state("i-vpn") == expected

    def test_provider_error_reads_as_unknown(self, adapter, stubs):
        stubs("ec2").add_client_error(
            "describe_instances", service_error_code="InvalidInstanceID.NotFound", http_status_code=400
        )

        assert adapter.get_instance_state("i-vpn") == InstanceState.UNKNOWN
