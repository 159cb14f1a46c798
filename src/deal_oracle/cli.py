"""
Deal Oracle CLI

Commands:
  create      - Open a deal
  submit      - Add a submission to a deal
  evaluate    - Score submissions
  release     - Release escrow to the winner
  dispute     - Flag a deal as disputed
  status      - Show one deal, or all of them
  scoreboard  - Ranked standings
  receipt     - Payout receipt
  check-env   - Report which settings are configured
  serve       - Run the API server

Results are printed as JSON on stdout. Errors go to stderr as "Error: ..."
with exit code 1.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any
import structlog

from .config import check_env
from .core.errors import OracleError


def configure_logging(level: str = "INFO") -> None:
    """Send structured logs to stderr; stdout carries command results only."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _oracle():
    from .oracle import build_oracle
    return build_oracle()


def cmd_create(args):
    """Open a deal."""
    deal = _oracle().create(
        title=args.title,
        amount=args.amount,
        requirements=args.requirements,
        challenge_minutes=args.challenge_minutes,
        require_proof_links=not args.no_proof_links,
        require_official_docs=not args.no_official_docs,
        accept_threshold=args.threshold,
    )
    _emit(deal.to_dict())


def cmd_submit(args):
    """Add a submission."""
    text = args.text
    if args.text_file:
        with open(args.text_file, encoding="utf-8") as f:
            text = f.read()
    _emit(_oracle().submit(
        args.deal_id,
        text,
        proof_links_csv=args.proof_links,
        payout_address=args.payout_address,
    ))


def cmd_evaluate(args):
    """Score submissions."""
    report = _oracle().evaluate(
        args.deal_id,
        submission_id=args.submission_id,
        reevaluate_all=args.all,
    )
    _emit(report.to_dict())


def cmd_release(args):
    """Release escrow."""
    _emit(_oracle().release(args.deal_id).to_dict())


def cmd_dispute(args):
    """Dispute a deal."""
    _emit(_oracle().dispute(args.deal_id, args.reason).to_dict())


def cmd_status(args):
    """Show deal status."""
    result = _oracle().status(args.deal_id)
    if isinstance(result, list):
        _emit([d.to_dict() for d in result])
    else:
        _emit(result.to_dict())


def cmd_scoreboard(args):
    """Show ranked standings."""
    board = _oracle().scoreboard(args.deal_id)
    if args.markdown:
        sys.stdout.write(board.to_markdown())
    else:
        _emit(board.to_dict())


def cmd_receipt(args):
    """Show the payout receipt."""
    receipt = _oracle().receipt(args.deal_id)
    if args.text:
        sys.stdout.write(receipt.to_text())
    else:
        _emit(receipt.to_dict())


def cmd_check_env(args):
    """Report configured settings."""
    report = check_env()
    _emit({"ok": not report["missing_required"], **report})
    if report["missing_required"]:
        sys.exit(1)


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Deal Oracle on {host}:{port}", file=sys.stderr)

    uvicorn.run(
        "deal_oracle.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


COMMANDS = {
    "create": cmd_create,
    "submit": cmd_submit,
    "evaluate": cmd_evaluate,
    "release": cmd_release,
    "dispute": cmd_dispute,
    "status": cmd_status,
    "scoreboard": cmd_scoreboard,
    "receipt": cmd_receipt,
    "check-env": cmd_check_env,
    "serve": cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deal-oracle",
        description="Deal Oracle - escrowed USDC deals released to the best submission",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # create
    create_parser = subparsers.add_parser("create", help="Open a deal")
    create_parser.add_argument("--title", required=True)
    create_parser.add_argument("--amount", required=True, help="Escrowed amount, e.g. 10 or 2.5")
    create_parser.add_argument("--requirements", required=True)
    create_parser.add_argument("--challenge-minutes", type=float, default=None)
    create_parser.add_argument("--threshold", type=float, default=None, help="Accept threshold in [0, 1]")
    create_parser.add_argument("--no-proof-links", action="store_true", help="Do not require proof links")
    create_parser.add_argument("--no-official-docs", action="store_true", help="Do not require official docs links")

    # submit
    submit_parser = subparsers.add_parser("submit", help="Add a submission")
    submit_parser.add_argument("deal_id")
    text_group = submit_parser.add_mutually_exclusive_group(required=True)
    text_group.add_argument("--text", help="Submission text")
    text_group.add_argument("--text-file", help="Read submission text from a file")
    submit_parser.add_argument("--proof-links", help="Comma separated URLs")
    submit_parser.add_argument("--payout-address", help="0x + 40 hex chars")

    # evaluate
    evaluate_parser = subparsers.add_parser("evaluate", help="Score submissions")
    evaluate_parser.add_argument("deal_id")
    evaluate_parser.add_argument("--submission-id")
    evaluate_parser.add_argument("--all", action="store_true", help="Re-evaluate every submission")

    # release
    release_parser = subparsers.add_parser("release", help="Release escrow to the winner")
    release_parser.add_argument("deal_id")

    # dispute
    dispute_parser = subparsers.add_parser("dispute", help="Flag a deal as disputed")
    dispute_parser.add_argument("deal_id")
    dispute_parser.add_argument("--reason")

    # status
    status_parser = subparsers.add_parser("status", help="Show deal status")
    status_parser.add_argument("deal_id", nargs="?")

    # scoreboard
    scoreboard_parser = subparsers.add_parser("scoreboard", help="Ranked standings")
    scoreboard_parser.add_argument("deal_id")
    scoreboard_parser.add_argument("--markdown", action="store_true")

    # receipt
    receipt_parser = subparsers.add_parser("receipt", help="Payout receipt")
    receipt_parser.add_argument("deal_id")
    receipt_parser.add_argument("--text", action="store_true", help="Print a copy/paste summary block")

    # check-env
    subparsers.add_parser("check-env", help="Report configured settings")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return

    configure_logging(os.environ.get("ORACLE_LOG_LEVEL", "INFO"))
    try:
        handler(args)
    except (OracleError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
