#!/usr/bin/env python3
"""
X12 278 Validator Command Line Tool

Parses an X12 document, validates it at SNIP levels 1-7 and writes the tree,
findings and compliance report as JSON.

Usage:
    python main.py request.edi                              # Writes request.json
    python main.py request.edi out.json                     # Writes to a specific file
    python main.py request.edi --overlay payer_overlay.json # Applies a usage overlay
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from edi_config import EngineConfig
from edi_errors import OverlayError
from schema_overlay import load_overlay
from validation_service import EDIValidationService

logger = logging.getLogger(__name__)


def validate_edi_file(input_file: str, output_file: str, args: argparse.Namespace) -> int:
    """Validates an EDI file and saves results to JSON."""

    print(f"EDI Validator - Processing {input_file}")
    print("=" * 50)

    config = EngineConfig(parallel_validation=args.parallel)
    if args.schema_dir:
        config = config.model_copy(update={"schema_base_path": Path(args.schema_dir)})
    service = EDIValidationService(config=config)

    try:
        with open(input_file, 'rb') as f:
            edi_content = f.read()
        print(f"Loaded {len(edi_content):,} bytes")

        overlay = None
        if args.overlay:
            overlay = load_overlay(args.overlay)
            print(f"Loaded overlay '{overlay.name}' with {len(overlay)} entries")

        result = service.validate_edi(edi_content, args.type, args.version, overlay=overlay)
    except FileNotFoundError as e:
        print(f"Error: File not found: {e}")
        return 1
    except OverlayError as e:
        print(f"Overlay error ({type(e).__name__}): {e.message}")
        return 1
    except (ValidationError, json.JSONDecodeError) as e:
        print(f"Overlay error ({type(e).__name__}): {args.overlay} is not a valid overlay file: {e}")
        return 1

    if result.fatal_error is not None:
        fatal = result.fatal_error
        print(f"Parsing failed ({fatal.error_type}): {fatal.message}")
        if fatal.offset is not None:
            print(f"  at character offset {fatal.offset}")
        output = {"valid": False, "fatalError": fatal.model_dump()}
    else:
        report = result.report
        print(f"\nCompliance score: {report.score}/100")
        for summary in report.levels:
            status = "PASS" if summary.passed else "FAIL"
            print(f"  Level {summary.level} {summary.name:<15} {status}  "
                  f"({summary.error_count} errors, {summary.warning_count} warnings)")

        if result.findings:
            print(f"\nValidation found {len(result.findings)} issues:")
            for i, finding in enumerate(result.findings[:5]):
                print(f"  {i+1}. [L{finding.level} {finding.severity.value}] {finding.message}")
            if len(result.findings) > 5:
                print(f"  ... and {len(result.findings) - 5} more issues")

        output = {
            "valid": result.valid,
            "document": result.tree.to_export_dict(),
            "findings": [finding.model_dump(mode="json") for finding in result.findings],
            "report": report.model_dump(mode="json"),
        }

    json_output = json.dumps(output, indent=2)
    with open(output_file, 'w') as f:
        f.write(json_output)
    print(f"\nJSON output saved to: {output_file}")

    return 0 if result.valid else 2


def main():
    """Main entry point with command line argument parsing."""

    parser = argparse.ArgumentParser(
        description="Validate X12 278 documents and export them as JSON",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py request.edi                          # Validate request.edi -> request.json
  python main.py request.edi out.json --parallel      # Run the validation stages concurrently
  python main.py request.edi --type 278 --version 005010X217
        """
    )

    parser.add_argument('input_file', help='Input EDI file')
    parser.add_argument('output_file', nargs='?',
                        help='Output JSON file (default: input_file.json)')
    parser.add_argument('--type', help='Transaction type (default: read from ST01)')
    parser.add_argument('--version', help='Implementation guide version (default: read from ST03/GS08)')
    parser.add_argument('--overlay', help='Usage overlay JSON file')
    parser.add_argument('--schema-dir', help='Directory holding implementation guide schemas')
    parser.add_argument('--parallel', action='store_true', help='Run validation stages on a thread pool')
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level (default: WARNING)')

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(asctime)s] [%(levelname)s] [%(name)s:%(lineno)d] - %(message)s",
        stream=sys.stderr,
    )

    if not args.output_file:
        args.output_file = str(Path(args.input_file).with_suffix('.json'))

    if not Path(args.input_file).exists():
        print(f"Error: Input file not found: {args.input_file}")
        return 1

    return validate_edi_file(args.input_file, args.output_file, args)


if __name__ == "__main__":
    sys.exit(main())
