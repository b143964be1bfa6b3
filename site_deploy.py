#!/usr/bin/env python3
"""Sync the static site to S3 and trigger an AWS Amplify manual deployment."""

import argparse
import fnmatch
import json
import mimetypes
import os
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Mapping, Optional, Sequence, Tuple

try:
    import boto3
    import requests
    from boto3.exceptions import Boto3Error
    from botocore.exceptions import BotoCoreError, ClientError
except ImportError as e:
    sys.exit(f"{e.name} is required. Install it with: pip install {e.name}")

# The site lives alongside this script.
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_BUCKET = "bonnemai.com"
DEFAULT_APP_ID = "d3iwsh8gt9f3of"
DEFAULT_BRANCH = "main"

DEFAULT_EXCLUDES = (
    ".git/*",
    ".github/*",
    "deploy.sh",
    "site_deploy.py",
    "README.md",
    ".DS_Store",
    "*/.DS_Store",
)
ARCHIVE_NAME = "amplify-upload.zip"
DELETE_BATCH_SIZE = 1000


def _flag(value: Optional[str]) -> bool:
    return value == "1"


@dataclass(frozen=True)
class DeployConfig:
    source_dir: str = SCRIPT_DIR
    bucket_name: str = DEFAULT_BUCKET
    app_id: str = DEFAULT_APP_ID
    branch: str = DEFAULT_BRANCH
    dry_run: bool = False
    skip_amplify: bool = False
    region: Optional[str] = None
    excludes: Tuple[str, ...] = DEFAULT_EXCLUDES

    @staticmethod
    def from_env(source_dir: str = SCRIPT_DIR, environ: Optional[Mapping[str, str]] = None) -> "DeployConfig":
        env = os.environ if environ is None else environ
        return DeployConfig(
            source_dir=os.path.abspath(source_dir),
            bucket_name=env.get("S3_BUCKET") or DEFAULT_BUCKET,
            app_id=env.get("AWS_AMPLIFY_APP_ID") or DEFAULT_APP_ID,
            branch=env.get("AWS_AMPLIFY_BRANCH") or DEFAULT_BRANCH,
            dry_run=_flag(env.get("DRY_RUN")),
            skip_amplify=_flag(env.get("SKIP_AMPLIFY")),
            region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
        )


def is_excluded(rel_path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(rel_path, pattern) for pattern in patterns)


def iter_site_files(source_dir: str, patterns: Sequence[str]) -> Iterator[Tuple[Path, str]]:
    """Yield (path, posix relative path) for every non-excluded file under source_dir."""
    root = Path(source_dir).resolve()
    for path in sorted(root.rglob("*")):
        if path.is_dir():
            continue
        rel = path.relative_to(root).as_posix()
        if is_excluded(rel, patterns):
            continue
        yield path, rel


def validate_credentials(sts):
    print("Validating AWS credentials...")
    try:
        sts.get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        sys.exit(f"AWS credentials are not configured or invalid: {e}")


def list_remote_objects(s3, bucket_name: str) -> dict:
    objects = {}
    paginator = s3.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket_name):
        for obj in page.get("Contents", []):
            objects[obj["Key"]] = obj
    return objects


def needs_upload(path: Path, remote: Optional[dict]) -> bool:
    if remote is None:
        return True
    stat = path.stat()
    if stat.st_size != remote["Size"]:
        return True
    local_mtime = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    return local_mtime > remote["LastModified"]


def sync_directory(s3, source_dir: str, bucket_name: str, patterns: Sequence[str]) -> Tuple[int, int]:
    """Mirror source_dir into the bucket. Returns (uploaded, deleted) counts."""
    print(f"Syncing {source_dir} -> s3://{bucket_name}")
    remote = list_remote_objects(s3, bucket_name)

    uploaded = 0
    local_keys = set()
    for path, key in iter_site_files(source_dir, patterns):
        local_keys.add(key)
        if not needs_upload(path, remote.get(key)):
            continue
        content_type, _ = mimetypes.guess_type(str(path))
        if content_type is None:
            content_type = "application/octet-stream"
        print(f"upload: {key} to s3://{bucket_name}/{key}")
        s3.upload_file(str(path), bucket_name, key, ExtraArgs={"ContentType": content_type})
        uploaded += 1

    # Excluded keys are left alone on the remote side too.
    stale = sorted(k for k in remote if k not in local_keys and not is_excluded(k, patterns))
    for i in range(0, len(stale), DELETE_BATCH_SIZE):
        batch = stale[i:i + DELETE_BATCH_SIZE]
        for key in batch:
            print(f"delete: s3://{bucket_name}/{key}")
        resp = s3.delete_objects(
            Bucket=bucket_name,
            Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
        )
        errors = resp.get("Errors", [])
        if errors:
            first = errors[0]
            sys.exit(f"Failed to delete s3://{bucket_name}/{first['Key']}: {first.get('Message', first.get('Code'))}")

    print(f"Sync complete: {uploaded} uploaded, {len(stale)} deleted.")
    return uploaded, len(stale)


def ensure_branch(amplify, app_id: str, branch: str):
    """Create the Amplify branch if it does not exist yet."""
    try:
        amplify.get_branch(appId=app_id, branchName=branch)
        return
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") != "NotFoundException":
            raise

    print(f"Amplify branch '{branch}' not found; creating it...")
    try:
        amplify.create_branch(appId=app_id, branchName=branch)
    except ClientError as e:
        sys.exit(
            f"Failed to create Amplify branch '{branch}': {e}\n"
            "Set AWS_AMPLIFY_BRANCH or create the branch in the Amplify console."
        )


def request_deployment(amplify, app_id: str, branch: str) -> Tuple[str, str]:
    print("Requesting Amplify deployment slot...")
    resp = amplify.create_deployment(appId=app_id, branchName=branch)
    upload_url = resp.get("zipUploadUrl")
    job_id = resp.get("jobId")
    if not upload_url or not job_id:
        print("Failed to obtain upload URL or job ID from Amplify response:", file=sys.stderr)
        print(json.dumps(resp, indent=2, default=str), file=sys.stderr)
        sys.exit(1)
    return upload_url, job_id


def build_archive(source_dir: str, archive_path: str, patterns: Sequence[str]) -> int:
    """Zip the site files (no directory entries) and return how many were written."""
    count = 0
    with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for path, rel in iter_site_files(source_dir, patterns):
            zf.write(path, rel)
            count += 1
    return count


def upload_archive(archive_path: str, upload_url: str):
    print("Uploading archive to Amplify...")
    try:
        with open(archive_path, "rb") as f:
            resp = requests.put(upload_url, data=f, headers={"Content-Type": "application/zip"})
        resp.raise_for_status()
    except requests.RequestException as e:
        sys.exit(f"Archive upload failed: {e}")


def start_deployment(amplify, app_id: str, branch: str, job_id: str) -> str:
    print(f"Starting Amplify deployment (job: {job_id})...")
    resp = amplify.start_deployment(appId=app_id, branchName=branch, jobId=job_id)
    resp.pop("ResponseMetadata", None)
    print(json.dumps(resp, indent=2, default=str))

    status = resp.get("jobSummary", {}).get("status", "")
    if status:
        print(f"Amplify deployment status: {status}")
    return status


def describe_dry_run(config: DeployConfig):
    """Print what a real run would do, following the same branches."""
    excludes = " ".join(f"--exclude {p}" for p in config.excludes)
    print(f"[dry-run] sync {config.source_dir} -> s3://{config.bucket_name} --delete {excludes}")

    if config.skip_amplify:
        print("Skipping Amplify deployment (SKIP_AMPLIFY=1).")
        return

    print(f"[dry-run] ensure Amplify branch '{config.branch}' exists")
    print(f"[dry-run] amplify create-deployment --app-id {config.app_id} --branch-name {config.branch}")
    print(f"[dry-run] PUT {ARCHIVE_NAME} -> <zipUploadUrl>")
    print(
        f"[dry-run] amplify start-deployment --app-id {config.app_id}"
        f" --branch-name {config.branch} --job-id <jobId>"
    )


def deploy(config: DeployConfig, session=None) -> Optional[str]:
    """Run the full deployment. Returns the Amplify job status, or None when Amplify is skipped."""
    if config.dry_run:
        describe_dry_run(config)
        return None

    session = session or boto3.Session(region_name=config.region)
    validate_credentials(session.client("sts"))

    s3 = session.client("s3")
    sync_directory(s3, config.source_dir, config.bucket_name, config.excludes)

    if config.skip_amplify:
        print("Skipping Amplify deployment (SKIP_AMPLIFY=1).")
        return None

    amplify = session.client("amplify")
    ensure_branch(amplify, config.app_id, config.branch)
    upload_url, job_id = request_deployment(amplify, config.app_id, config.branch)

    with tempfile.TemporaryDirectory() as tmp_dir:
        archive_path = os.path.join(tmp_dir, ARCHIVE_NAME)
        count = build_archive(config.source_dir, archive_path, config.excludes)
        print(f"Packaged {count} files into {ARCHIVE_NAME}")
        upload_archive(archive_path, upload_url)

    status = start_deployment(amplify, config.app_id, config.branch, job_id)
    print("\nDeployment complete.")
    return status


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Upload the static site to the configured S3 bucket and trigger an AWS Amplify "
                    "start-deployment workflow.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""environment variables:
  S3_BUCKET               Target bucket name (default: bonnemai.com)
  AWS_AMPLIFY_APP_ID      Amplify app id (default: d3iwsh8gt9f3of)
  AWS_AMPLIFY_BRANCH      Amplify branch to deploy (default: main)
  SKIP_AMPLIFY            If set to 1, skip the Amplify deployment step
  DRY_RUN                 If set to 1, only print the actions that would run""",
    )
    parser.add_argument(
        "path", nargs="?", default=SCRIPT_DIR,
        help="Directory to sync (default: the directory containing this script).",
    )
    args, extra = parser.parse_known_args(argv)
    if extra:
        parser.print_usage(sys.stderr)
        sys.exit(1)

    source_dir = os.path.abspath(args.path)
    if not os.path.isdir(source_dir):
        sys.exit(f"Source directory not found: {source_dir}")

    config = DeployConfig.from_env(source_dir)
    try:
        deploy(config)
    except (ClientError, BotoCoreError, Boto3Error) as e:
        sys.exit(f"AWS call failed: {e}")


if __name__ == "__main__":
    main()
