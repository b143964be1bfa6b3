#!/usr/bin/env python3
"""Create or update the IAM role GitHub Actions assumes to sync the site to S3."""

import argparse
import json
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

try:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError
except ImportError:
    sys.exit("boto3 is required. Install it with: pip install boto3")

GITHUB_OIDC_HOST = "token.actions.githubusercontent.com"
GITHUB_OIDC_URL = f"https://{GITHUB_OIDC_HOST}"
OIDC_CLIENT_ID = "sts.amazonaws.com"
# Must match the certificate chain GitHub serves for the issuer.
OIDC_THUMBPRINT = "6938fd4d98bab03faadb97b34396831e3780aea1"
POLICY_NAME = "DeployStaticSite"
FALLBACK_REPO = "olivierbonnemaison/web_site"
DEFAULT_ROLE_NAME = "github-deploy-static-site"
DEFAULT_BUCKET = "bonnemai.com"
DEFAULT_BRANCH = "main"
DEFAULT_PARTITION = "aws"


def parse_github_repo(remote_url: str) -> str:
    """Return ``owner/name`` for a GitHub remote URL, or "" for anything else."""
    remote = remote_url.strip()
    path = ""
    if remote.startswith("git@github.com:"):
        path = remote.split(":", 1)[1]
    elif remote.startswith("https://github.com/"):
        path = remote.split("https://github.com/", 1)[1]

    if path.endswith(".git"):
        path = path[:-4]
    return path


def detect_github_repo(cwd: Optional[str] = None) -> str:
    try:
        inside = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=cwd, capture_output=True, text=True,
        )
        if inside.returncode != 0:
            return ""
        remote = subprocess.run(
            ["git", "config", "--get", "remote.origin.url"],
            cwd=cwd, capture_output=True, text=True,
        )
    except FileNotFoundError:
        # git not installed
        return ""
    if remote.returncode != 0:
        return ""
    return parse_github_repo(remote.stdout)


@dataclass(frozen=True)
class ProvisionConfig:
    role_name: str = DEFAULT_ROLE_NAME
    bucket_name: str = DEFAULT_BUCKET
    github_repo: str = FALLBACK_REPO
    github_branch: str = DEFAULT_BRANCH
    region: Optional[str] = None

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None, cwd: Optional[str] = None) -> "ProvisionConfig":
        env = os.environ if environ is None else environ

        repo = env.get("GITHUB_REPO") or detect_github_repo(cwd) or FALLBACK_REPO

        return ProvisionConfig(
            role_name=env.get("ROLE_NAME") or DEFAULT_ROLE_NAME,
            bucket_name=env.get("BUCKET_NAME") or DEFAULT_BUCKET,
            github_repo=repo,
            github_branch=env.get("GITHUB_BRANCH") or DEFAULT_BRANCH,
            region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
        )

    @property
    def description(self) -> str:
        return (
            f"Role assumed by GitHub Actions to deploy {self.github_repo}@{self.github_branch}"
            f" to s3://{self.bucket_name}"
        )


def oidc_provider_arn(account_id: str, partition: str = DEFAULT_PARTITION) -> str:
    return f"arn:{partition}:iam::{account_id}:oidc-provider/{GITHUB_OIDC_HOST}"


def build_trust_policy(provider_arn: str, repo: str, branch: str) -> dict:
    """Trust policy letting workflows on ``repo``@``branch`` assume the role via OIDC."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": provider_arn},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {f"{GITHUB_OIDC_HOST}:aud": OIDC_CLIENT_ID},
                    "StringLike": {f"{GITHUB_OIDC_HOST}:sub": f"repo:{repo}:ref:refs/heads/{branch}"},
                },
            }
        ],
    }


def build_access_policy(bucket_name: str, partition: str = DEFAULT_PARTITION) -> dict:
    """Inline policy scoped to a single bucket: list it, read/write/delete its objects."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "AllowListBucket",
                "Effect": "Allow",
                "Action": ["s3:ListBucket"],
                "Resource": f"arn:{partition}:s3:::{bucket_name}",
            },
            {
                "Sid": "AllowObjectReadWrite",
                "Effect": "Allow",
                "Action": ["s3:GetObject", "s3:PutObject", "s3:DeleteObject"],
                "Resource": f"arn:{partition}:s3:::{bucket_name}/*",
            },
        ],
    }


def policy_json(document: dict) -> str:
    return json.dumps(document, indent=2, sort_keys=True)


def get_caller_account(sts) -> Tuple[str, str]:
    """Return (partition, account id) for the active credentials."""
    print("Determining AWS account...")
    try:
        identity = sts.get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        sys.exit(f"AWS credentials are not configured or invalid: {e}")
    # arn:<partition>:iam::<account>:...
    partition = identity["Arn"].split(":")[1]
    return partition, identity["Account"]


def ensure_oidc_provider(iam, account_id: str, partition: str = DEFAULT_PARTITION) -> str:
    """Create the GitHub OIDC provider unless one with the expected ARN exists."""
    arn = oidc_provider_arn(account_id, partition)
    resp = iam.list_open_id_connect_providers()
    existing = [p["Arn"] for p in resp.get("OpenIDConnectProviderList", [])]

    if arn in existing:
        print(f"Using existing OIDC provider: {arn}")
        return arn

    print("Creating GitHub OIDC provider...")
    iam.create_open_id_connect_provider(
        Url=GITHUB_OIDC_URL,
        ClientIDList=[OIDC_CLIENT_ID],
        ThumbprintList=[OIDC_THUMBPRINT],
    )
    print(f"Created OIDC provider: {arn}")
    return arn


def role_exists(iam, role_name: str) -> bool:
    try:
        iam.get_role(RoleName=role_name)
        return True
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "NoSuchEntity":
            return False
        raise


def ensure_role(iam, config: ProvisionConfig, trust_policy: dict) -> bool:
    """Create the role, or overwrite its trust policy. Returns True if the role was created."""
    document = policy_json(trust_policy)

    if role_exists(iam, config.role_name):
        print(f"Updating trust policy for role {config.role_name}...")
        iam.update_assume_role_policy(RoleName=config.role_name, PolicyDocument=document)
        return False

    print(f"Creating role {config.role_name}...")
    iam.create_role(
        RoleName=config.role_name,
        AssumeRolePolicyDocument=document,
        Description=config.description,
    )
    return True


def attach_access_policy(iam, role_name: str, bucket_name: str, partition: str = DEFAULT_PARTITION):
    print(f"Attaching inline policy {POLICY_NAME} to {role_name}...")
    iam.put_role_policy(
        RoleName=role_name,
        PolicyName=POLICY_NAME,
        PolicyDocument=policy_json(build_access_policy(bucket_name, partition)),
    )


def get_role_arn(iam, role_name: str) -> str:
    return iam.get_role(RoleName=role_name)["Role"]["Arn"]


def provision(config: ProvisionConfig, session=None) -> str:
    """Run every provisioning step in order and return the role ARN."""
    session = session or boto3.Session(region_name=config.region)
    sts = session.client("sts")
    iam = session.client("iam")

    print(f"Using GitHub repo: {config.github_repo} (branch: {config.github_branch})")
    partition, account_id = get_caller_account(sts)
    provider_arn = ensure_oidc_provider(iam, account_id, partition)

    trust_policy = build_trust_policy(provider_arn, config.github_repo, config.github_branch)
    ensure_role(iam, config, trust_policy)
    attach_access_policy(iam, config.role_name, config.bucket_name, partition)

    return get_role_arn(iam, config.role_name)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Create or update the IAM role used by GitHub Actions to sync the static site to S3.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""environment variables:
  ROLE_NAME         Name for the IAM role (default: github-deploy-static-site)
  BUCKET_NAME       Target S3 bucket (default: bonnemai.com)
  GITHUB_REPO       GitHub repo in owner/name form (default: detected from the
                    git origin remote, else olivierbonnemaison/web_site)
  GITHUB_BRANCH     Branch that may assume the role (default: main)

example:
  ROLE_NAME=web-site-deployer BUCKET_NAME=mybucket %(prog)s""",
    )
    parser.parse_args(argv)

    config = ProvisionConfig.from_env()
    try:
        role_arn = provision(config)
    except (ClientError, BotoCoreError) as e:
        sys.exit(f"AWS call failed: {e}")

    print(f"\nRole ready: {role_arn}\n")
    print("Add this value to your GitHub repository secret AWS_DEPLOY_ROLE_ARN and rerun the workflow.")
    print(
        "\nIf you need to allow additional branches or actions, re-run this script with an updated"
        " GITHUB_BRANCH or edit the trust policy manually."
    )


if __name__ == "__main__":
    main()
