import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from chat_attachments.config_loader import DEFAULT_CONFIG_FILE, load_config
from chat_attachments.config_models import AppConfig
from chat_attachments.errors import AttachmentError
from chat_attachments.factory import build_service
from chat_attachments.models import Attachment, AttachmentKind, Message
from chat_attachments.service import AttachmentService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-attachments", description="Chat attachment cache tool"
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (overrides config file and environment variable)",
    )
    parser.add_argument(
        "--storage-path",
        default=None,
        help="Attachment storage path (overrides config file and environment variable)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch = subparsers.add_parser("fetch", help="Download an attachment into the store")
    _add_attachment_arguments(fetch)
    source = fetch.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", help="Remote URL of the attachment")
    source.add_argument("--remote-id", help="Remote id of the attachment")
    fetch.add_argument(
        "--kind",
        choices=[kind.value for kind in AttachmentKind],
        default=AttachmentKind.FILE.value,
    )

    state = subparsers.add_parser("state", help="Show the cached state of an attachment")
    _add_attachment_arguments(state)

    remove = subparsers.add_parser("remove", help="Remove cached attachments")
    remove.add_argument("--dialog-id", help="Dialog whose attachments are removed")
    remove.add_argument(
        "--message-id",
        action="append",
        default=[],
        help="Only remove attachments of this message (repeatable)",
    )
    remove.add_argument(
        "--all", action="store_true", help="Remove every cached attachment"
    )
    return parser


def _add_attachment_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--attachment-id", required=True)
    parser.add_argument("--message-id", required=True)
    parser.add_argument("--dialog-id", required=True)


def apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.log_level is not None:
        config = config.model_copy(update={"log_level": args.log_level.upper()})
    if args.storage_path is not None:
        store = config.store.model_copy(update={"storage_path": args.storage_path})
        config = config.model_copy(update={"store": store})
    return config


async def run_command(service: AttachmentService, args: argparse.Namespace) -> int:
    if args.command == "fetch":
        attachment = Attachment(
            id=args.attachment_id,
            kind=AttachmentKind(args.kind),
            remote_url=args.url,
            remote_id=args.remote_id,
        )
        message = Message(
            id=args.message_id, dialog_id=args.dialog_id, attachments=[attachment]
        )
        outcome = await service.fetch(
            attachment.id,
            message,
            on_progress=lambda progress: logger.info(
                f"{attachment.id}: {progress:.0%}"
            ),
        )
        result = {
            "attachment_id": attachment.id,
            "state": attachment.state.value,
            "size": outcome.payload.size if outcome.payload else None,
        }
        if outcome.media_info is not None:
            result["width"] = outcome.media_info.width
            result["height"] = outcome.media_info.height
            result["duration_seconds"] = outcome.media_info.duration_seconds
        print(json.dumps(result))
        return 0

    if args.command == "state":
        message = Message(
            id=args.message_id,
            dialog_id=args.dialog_id,
            attachments=[Attachment(id=args.attachment_id)],
        )
        state = await service.state_for(message, args.attachment_id)
        print(state.value)
        return 0

    if args.all:
        await service.remove_all()
    elif args.dialog_id is None:
        logger.error("remove needs --dialog-id or --all")
        return 2
    elif args.message_id:
        await service.remove_for_messages(args.message_id, args.dialog_id)
    else:
        await service.remove_for_dialog(args.dialog_id)
    return 0


async def _run(config: AppConfig, args: argparse.Namespace) -> int:
    service = build_service(config)
    try:
        return await run_command(service, args)
    finally:
        await service.aclose()
        await service.transport.aclose()


def main(argv: list[str] | None = None) -> int:
    """Loads config, parses args and runs the requested command."""
    args = build_parser().parse_args(argv)
    try:
        config = apply_cli_overrides(load_config(args.config), args)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=config.log_level,
    )
    # Keep external libraries less verbose
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        return asyncio.run(_run(config, args))
    except AttachmentError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
