"""Command line entry point."""

import argparse
import logging
import sys
from typing import Callable, List, Optional

from rich.table import Table

from .blob_store import S3BlobStore
from .cloud import CloudProvider
from .config import load_config
from .errors import LabError
from .logging_setup import console, log_success, print_header, setup_logging
from .provisioner import Provisioner
from .reconciler import CleanupReport, Reconciler
from .registry import StateStore

logger = logging.getLogger(__name__)

ACTIONS = ["create-ec2", "create-sg", "create-bucket", "cleanup", "status", "adopt"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="awslab",
        description="Provision and clean up AWS lab resources tracked in an S3 state file",
    )
    parser.add_argument(
        "action",
        choices=ACTIONS,
        help=(
            "Action to perform: create an EC2 instance, security group or S3 bucket, "
            "clean up tracked resources, show tracked resources, or adopt "
            "project-tagged resources into the state file"
        ),
    )
    parser.add_argument("--config", "-c", help="Path to YAML configuration file")
    parser.add_argument("--region", "-r", help="AWS region (default: eu-west-1)")
    parser.add_argument("--profile", "-p", help="AWS profile name to use for authentication")
    parser.add_argument(
        "--dry-run",
        "-d",
        action="store_true",
        default=None,
        help="Show what would be done without actually doing it",
    )
    parser.add_argument(
        "--yes",
        "-y",
        dest="skip_confirmation",
        action="store_true",
        default=None,
        help="Skip the confirmation prompt",
    )
    parser.add_argument("--project-tag", help="Value of the Project tag (default: AutomationLab)")
    parser.add_argument("--state-bucket", help="S3 bucket holding the state file")
    parser.add_argument("--state-key", help="Object key of the state file")
    parser.add_argument("--log-dir", help="Directory for log files (default: ./logs)")
    parser.add_argument(
        "--output-file", help="Env file for created ids (default: <log-dir>/outputs.env)"
    )
    parser.add_argument(
        "--strict-state",
        action="store_true",
        default=None,
        help="Fail instead of starting empty when the state file is corrupt",
    )
    parser.add_argument("--name", "-n", help="Resource name (instance, security group or bucket)")
    parser.add_argument(
        "--instance-type", "-t", default="t3.micro", help="Instance type (default: t3.micro)"
    )
    parser.add_argument("--key-name", help="Key pair name for create-ec2")
    parser.add_argument("--ami-id", help="AMI for create-ec2 (default: latest Amazon Linux 2023)")
    parser.add_argument(
        "--description",
        default="Security group for AutomationLab",
        help="Security group description",
    )
    return parser


def confirm_action(
    prompt: str,
    confirm_text: str = "yes",
    input_fn: Callable[[str], str] = input,
) -> bool:
    """Ask the user to type confirm_text; anything else cancels."""
    console.print(f"\n[yellow]{prompt}[/yellow]")
    try:
        response = input_fn(f"Type '{confirm_text}' to confirm: ")
    except (EOFError, KeyboardInterrupt):
        return False
    return response.strip() == confirm_text


def render_report(report: CleanupReport) -> Table:
    table = Table(title="Cleanup summary")
    table.add_column("Resource")
    table.add_column("Deleted", justify="right", style="green")
    table.add_column("Already gone", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right", style="yellow")
    table.add_column("Still tracked", justify="right")
    for tally in report.phases.values():
        table.add_row(
            tally.label,
            str(tally.deleted),
            str(tally.already_gone),
            str(tally.skipped),
            str(tally.failed),
            str(tally.remaining),
        )
    return table


def render_state(store: StateStore) -> Table:
    table = Table(title=f"Tracked resources ({store.location})")
    table.add_column("Kind")
    table.add_column("Id")
    table.add_column("Details")
    table.add_column("Region")
    for record in store.instances:
        table.add_row(
            "EC2 instance",
            record.instance_id,
            f"{record.name} {record.instance_type} key={record.key_pair} state={record.state}",
            record.region,
        )
    for record in store.key_pairs:
        table.add_row("Key pair", record.key_name, "", record.region)
    for record in store.security_groups:
        table.add_row("Security group", record.group_id, f"{record.group_name} {record.vpc_id}", record.region)
    for record in store.buckets:
        table.add_row("S3 bucket", record.bucket_name, "", record.region)
    return table


def run(args: argparse.Namespace, input_fn: Callable[[str], str] = input) -> int:
    config = load_config(
        config_file=args.config,
        region=args.region,
        profile=args.profile,
        dry_run=args.dry_run,
        skip_confirmation=args.skip_confirmation,
        project_tag=args.project_tag,
        state_bucket=args.state_bucket,
        state_key=args.state_key,
        log_dir=args.log_dir,
        strict_state=args.strict_state,
        output_file=args.output_file,
    )
    setup_logging(config.log_dir, script_name=args.action.replace("-", "_"))
    print_header(f"awslab {args.action} ({config.region})")

    cloud = CloudProvider.from_config(config)
    store = StateStore(
        S3BlobStore(cloud.s3_client, config.region),
        bucket=config.state_bucket,
        key=config.state_key,
        region=config.region,
        strict=config.strict_state,
    )
    store.load()

    if args.action == "status":
        console.print(render_state(store))
        for label, count in store.summary().items():
            console.print(f"  {label}: {count}")
        return 0

    if args.action == "cleanup":
        if config.dry_run:
            logger.info("[DRY-RUN] Skipping confirmation")
        elif config.skip_confirmation:
            logger.warning("Skipping confirmation (--yes)")
        elif not confirm_action(
            f"WARNING: This will delete every resource tracked in {store.location}",
            input_fn=input_fn,
        ):
            logger.info("Cleanup cancelled.")
            return 0

        reconciler = Reconciler(
            store,
            cloud,
            settle_seconds=config.settle_seconds,
            state_bucket=config.state_bucket,
            key_dir=config.key_dir,
        )
        report = reconciler.reconcile_all()
        console.print(render_report(report))
        if config.dry_run:
            logger.info("[DRY-RUN] Cleanup preview complete; nothing was changed")
        elif report.succeeded:
            log_success(logger, "All tracked resources cleaned up")
        else:
            logger.warning(
                f"{report.failed} resource(s) could not be deleted and stay tracked; "
                "run cleanup again later"
            )
        return 0

    provisioner = Provisioner(store, cloud, config)
    if args.action == "create-ec2":
        record = provisioner.create_instance(
            name=args.name or "AutomationLab-EC2",
            instance_type=args.instance_type,
            key_name=args.key_name,
            ami_id=args.ami_id,
        )
        outputs = provisioner.outputs
        console.print(f"Instance ID:   {record.instance_id}")
        console.print(f"Instance Type: {record.instance_type}")
        console.print(f"Public IP:     {outputs.get('PUBLIC_IP', 'N/A')}")
        console.print(f"Private IP:    {outputs.get('PRIVATE_IP', 'N/A')}")
        console.print(f"Key Pair:      {record.key_pair}.pem")
        console.print(f"Region:        {record.region}")
        console.print("\nTo connect via SSH, use:")
        console.print(
            f"  ssh -i {record.key_pair}.pem ec2-user@{outputs.get('PUBLIC_IP', 'N/A')}",
            markup=False,
        )
    elif args.action == "create-sg":
        if not args.name:
            raise LabError("--name is required for create-sg")
        record = provisioner.create_security_group(args.name, args.description)
        console.print(f"Security Group ID:   {record.group_id}")
        console.print(f"Security Group Name: {record.group_name}")
        console.print(f"VPC ID:              {record.vpc_id}")
    elif args.action == "create-bucket":
        if not args.name:
            raise LabError("--name is required for create-bucket")
        record = provisioner.create_bucket(args.name)
        details = cloud.bucket_details(record.bucket_name)
        console.print(f"Bucket Name:        {record.bucket_name}")
        console.print(f"Region:             {record.region}")
        console.print(f"Versioning Status:  {details['versioning']}")
        console.print(f"Bucket ARN:         arn:aws:s3:::{record.bucket_name}")
        console.print("\nCurrent bucket contents:")
        for key in details["objects"]:
            console.print(f"  {key}", markup=False)
    elif args.action == "adopt":
        adopted = provisioner.adopt()
        for kind, count in adopted.items():
            console.print(f"  {kind}: {count} adopted")

    if args.action != "adopt" and config.outputs_path:
        provisioner.export_outputs(config.outputs_path, args.action)

    for label, count in store.summary().items():
        console.print(f"  {label}: {count} tracked")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main function to handle command line arguments and execute the action."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.action in ("create-sg", "create-bucket") and not args.name:
        parser.error(f"--name is required for action '{args.action}'")

    try:
        code = run(args)
    except LabError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
