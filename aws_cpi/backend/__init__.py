# Backends talking to AWS: client factory, storage and networking
from .clients import create_aws_clients

__all__ = ["create_aws_clients"]
