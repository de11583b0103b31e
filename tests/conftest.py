"""Shared fixtures."""

import pytest

from stackwarden.config.parser import Config
from stackwarden.orchestrator.orchestrator import StackOrchestrator
from stackwarden.provisioning.base import InstanceState
from stackwarden.state.manager import StateManager
from stackwarden.state.models import ResourceKind
from stackwarden.utils.polling import Poller
from tests.fakes import FakeClock, FakeProvisioningAPI, config_data

NETWORK_TEMPLATE = "Resources:\n  Vpc:\n    Type: AWS::EC2::VPC\n"
APP_TEMPLATE = "Resources:\n  VpnInstance:\n    Type: AWS::EC2::Instance\n"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(clock):
    return Poller(initial_interval=1, max_interval=4, multiplier=2, timeout=60, clock=clock, sleep=clock.sleep)


@pytest.fixture
def api():
    fake = FakeProvisioningAPI()
    fake.stack_outputs["network"] = {"VpcId": "vpc-123"}
    fake.stack_outputs["app"] = {"InstancePublicIp": "198.51.100.7"}
    fake.add_resource(
        ResourceKind.COMPUTE,
        "i-vpn",
        {"role": "RoleA", "security_groups": ["sg-1"], "instance_type": "t3.micro"},
        selector={"tag:Name": "vpn-nat"},
    )
    fake.instances["i-vpn"] = InstanceState.RUNNING
    return fake


@pytest.fixture
def project_dir(tmp_path):
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "network.yaml").write_text(NETWORK_TEMPLATE)
    (templates / "app.yaml").write_text(APP_TEMPLATE)
    return tmp_path


@pytest.fixture
def config(project_dir):
    return Config.from_dict(config_data(), str(project_dir / "stackwarden.yaml"))


@pytest.fixture
def state_manager(project_dir):
    return StateManager(str(project_dir / ".stackwarden" / "state" / "devcloud-dev.json"))


@pytest.fixture
def orchestrator(config, state_manager, api):
    return StackOrchestrator(
        config=config,
        environment="dev",
        state_manager=state_manager,
        api_factory=lambda credentials: api,
    )
