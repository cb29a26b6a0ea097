from .clients import AWSModule, EC2ClientFactory, ec2_client_factory
from .provider import AWSProvider

__all__ = [
    "AWSModule",
    "AWSProvider",
    "EC2ClientFactory",
    "ec2_client_factory",
]
