"""
Ledger Integrity Check

Verifies the hash chains of the audit ledger configured through the
LEDGER_* environment variables and prints a report.

Usage:
    python scripts/verify_ledger.py --all
    python scripts/verify_ledger.py --scope company-123
    python scripts/verify_ledger.py --scope company-123 --category GeneralAudit
"""

import argparse
import asyncio
import logging
import sys

from ledger.audit.config import AuditConfig
from ledger.audit.facade import AuditFacade
from ledger.audit.models import (
    LogCategory,
    ScopeVerificationReport,
    VerificationResult,
)


def print_result(result: VerificationResult) -> None:
    mark = "\033[92mOK\033[0m" if result.valid else "\033[91mFAILED\033[0m"
    print(f"  [{mark}] {result.scope_id} / {result.category.value}")
    if result.valid:
        print(f"        {result.message}")
        return

    print(f"        {result.failure.value if result.failure else 'Unknown'}: {result.error}")
    if result.possible_deletion:
        print(f"        {result.missing_sequences} record(s) missing before "
              f"sequence {result.failed_sequence}")
    if result.expected_hash:
        print(f"        expected {result.expected_hash}")
        print(f"        actual   {result.actual_hash}")


def print_report(report: ScopeVerificationReport) -> None:
    print(f"\nScope: {report.scope_id}")
    for result in report.results.values():
        print_result(result)


async def run(args: argparse.Namespace) -> bool:
    audit = await AuditFacade.from_config(AuditConfig.from_env())
    try:
        if args.all:
            reports = await audit.verify_all()
            for report in reports:
                print_report(report)
            print("\n" + "=" * 60)
            failed = sum(1 for r in reports if not r.overall_valid)
            print(f"Total: {len(reports)} scope(s) checked, {failed} invalid")
            return failed == 0

        if args.category:
            result = await audit.verify(args.scope, LogCategory(args.category))
            print_result(result)
            return result.valid

        report = await audit.verify_scope(args.scope)
        print_report(report)
        return report.overall_valid
    finally:
        await audit.close()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Verify audit ledger hash chains"
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Verify every chain of every scope"
    )
    parser.add_argument(
        "--scope",
        type=str,
        help="Scope ID to verify"
    )
    parser.add_argument(
        "--category",
        type=str,
        choices=[c.value for c in LogCategory],
        help="Verify a single chain of the scope"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show ledger log output"
    )

    args = parser.parse_args()

    if not args.all and not args.scope:
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    valid = asyncio.run(run(args))
    return 0 if valid else 1


if __name__ == "__main__":
    sys.exit(main())
