"""
AWS SDK client initialization.
All remote calls go through the clients built here: one boto3 session shared by
the EC2, classic ELB and ELBv2 clients.
"""
import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config

logger = logging.getLogger("aws-cpi")


def _endpoint_url(endpoint: Optional[str]) -> Optional[str]:
    """Endpoints configured without a scheme are assumed to be https."""
    if not endpoint:
        return None
    if not urlparse(endpoint).scheme:
        return f"https://{endpoint}"
    return endpoint


def _session(aws_config) -> boto3.session.Session:
    params: Dict[str, Any] = {}
    if aws_config.region:
        params["region_name"] = aws_config.region
    if aws_config.credentials_source == "static":
        params["aws_access_key_id"] = aws_config.access_key_id
        params["aws_secret_access_key"] = aws_config.secret_access_key
        if aws_config.session_token:
            params["aws_session_token"] = aws_config.session_token
    session = boto3.session.Session(**params)
    if not aws_config.role_arn:
        return session
    logger.info("Assuming role %s", aws_config.role_arn)
    creds = session.client("sts").assume_role(RoleArn=aws_config.role_arn, RoleSessionName="aws-cpi")["Credentials"]
    return boto3.session.Session(
        aws_access_key_id=creds["AccessKeyId"],
        aws_secret_access_key=creds["SecretAccessKey"],
        aws_session_token=creds["SessionToken"],
        region_name=aws_config.region,
    )


def create_aws_clients(aws_config) -> Dict[str, Any]:
    """
    Create the boto3 clients used by the managers.
    Returns:
        Dictionary with keys ``ec2``, ``elb`` (classic load balancers) and
        ``elbv2`` (target groups).
    """
    session = _session(aws_config)
    config = Config(retries={"max_attempts": aws_config.max_retries, "mode": "standard"})
    common: Dict[str, Any] = {"config": config}
    ca_bundle = os.environ.get("BOSH_CA_CERT_FILE")
    if ca_bundle:
        common["verify"] = ca_bundle
    ec2_endpoint = _endpoint_url(aws_config.ec2_endpoint)
    elb_endpoint = _endpoint_url(aws_config.elb_endpoint)
    return {
        "ec2": session.client("ec2", endpoint_url=ec2_endpoint, **common),
        "elb": session.client("elb", endpoint_url=elb_endpoint, **common),
        "elbv2": session.client("elbv2", endpoint_url=elb_endpoint, **common),
    }
