import pulumi
import pytest

from lookups import resolve_environment

AMI_PARAMETER = "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"


def test_resolve_environment(mocks):
    environment = resolve_environment(AMI_PARAMETER)

    assert environment.account_id == "123456789012"
    assert environment.vpc_id == "vpc-0123"
    assert environment.ami_id == "ami-0abc"


def test_subnet_choice_is_deterministic(mocks):
    mocks.subnet_ids = ["subnet-0ccc", "subnet-0aaa", "subnet-0bbb"]

    assert resolve_environment(AMI_PARAMETER).subnet_id == "subnet-0aaa"


def test_missing_default_subnets(mocks):
    mocks.subnet_ids = []

    with pytest.raises(pulumi.RunError):
        resolve_environment(AMI_PARAMETER)
