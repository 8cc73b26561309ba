# -*- coding: utf-8 -*-
"""
unity_bundle_cli.py

Command Line Interface (CLI) for inspecting UnityFS asset bundles.

Uses the unity_bundle module to list the directory, show the header,
extract entries and test that every entry can be reconstructed.
"""

import argparse
import logging
import os
import sys

from unity_bundle import (
    UnityBundle,
    EntryNotFoundError,
    InvalidFormatError,
    UnityBundleError,
    resolve_extract_path,
)

# --- Command Functions ---


def handle_list(args):
    """Handles the 'list' command."""
    try:
        with UnityBundle(args.bundle_file) as bundle:
            entries = bundle.directory
            if not entries:
                print(f'Bundle "{args.bundle_file}" contains no entries.')
                return

            if args.long:
                print(f"{'Size':<11}{'Offset':>12} {'Flags':>10}  {'Path'}")
                print("-" * 80)
                for entry in entries:
                    print(f"{str(entry.size):<11}{entry.offset:>12} {entry.flags:>#10x}  {entry.path}")
            else:
                for entry in entries:
                    print(entry.path)

    except FileNotFoundError:
        print(f'Error: Bundle "{args.bundle_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.bundle_file}" is not a valid bundle or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except UnityBundleError as e:
        print(f'Error listing bundle "{args.bundle_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during list: {e}", file=sys.stderr)
        sys.exit(1)


def handle_info(args):
    """Handles the 'info' command."""
    try:
        with UnityBundle(args.bundle_file) as bundle:
            header = bundle.header
            print(f"Signature:      {header.signature}")
            print(f"Version:        {header.version}")
            print(f"Unity version:  {header.unity_version}")
            print(f"Unity revision: {header.unity_revision}")
            print(f"Size:           {header.size}")
            print(f"Blocks info:    {header.compressed_blocks_info_size} compressed, {header.uncompressed_blocks_info_size} uncompressed")
            print(f"Flags:          0x{header.flags:08X}")
            print(f"Compression:    {bundle.compression.value}")
            print(f"Blocks:         {len(bundle.blocks)}")
            print(f"Entries:        {len(bundle.directory)}")

    except FileNotFoundError:
        print(f'Error: Bundle "{args.bundle_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.bundle_file}" is not a valid bundle or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except UnityBundleError as e:
        print(f'Error reading bundle "{args.bundle_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during info: {e}", file=sys.stderr)
        sys.exit(1)


def handle_extract(args):
    """Handles the 'extract' command."""
    try:
        with UnityBundle(args.bundle_file) as bundle:
            destination = args.destination if args.destination else "."

            if args.entries:
                print(f'Extracting specific entries to "{destination}"...')
                os.makedirs(destination, exist_ok=True)
                extracted_count = 0
                failed_count = 0
                for entry_name in args.entries:
                    target_path = resolve_extract_path(destination, entry_name)
                    if target_path is None:
                        print(f'  -> Error: Refusing to extract "{entry_name}" outside of "{destination}".', file=sys.stderr)
                        failed_count += 1
                        continue
                    try:
                        print(f"  Extracting: {entry_name} -> {target_path}")
                        bundle.extract_file(entry_name, target_path)
                        extracted_count += 1
                    except EntryNotFoundError:
                        print(f'  -> Error: Entry "{entry_name}" not found in the bundle.', file=sys.stderr)
                        failed_count += 1
                    except UnityBundleError as e:
                        print(f'  -> Error extracting "{entry_name}": {e}', file=sys.stderr)
                        failed_count += 1
            else:
                extracted_count, failed_count = bundle.extract_all(destination)

            print(f"Extraction finished. {extracted_count} entries extracted, {failed_count} failed.")
            if failed_count > 0:
                sys.exit(1)

    except FileNotFoundError:
        print(f'Error: Bundle "{args.bundle_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.bundle_file}" is not a valid bundle or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except UnityBundleError as e:
        print(f'Error during extraction from "{args.bundle_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during extraction: {e}", file=sys.stderr)
        sys.exit(1)


def handle_test(args):
    """Handles the 'test' command."""
    try:
        with UnityBundle(args.bundle_file) as bundle:
            print(f"Testing integrity of '{args.bundle_file}'...")
            failed_entries = bundle.test_bundle()
            for entry_name, error_msg in failed_entries:
                print(f"   {entry_name}: FAILED: {error_msg}")

            if failed_entries:
                print(f"Integrity test failed for {len(failed_entries)} entries.")
                sys.exit(1)
            print(f"Integrity test passed for all {len(bundle.directory)} entries.")

    except FileNotFoundError:
        print(f'Error: Bundle "{args.bundle_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.bundle_file}" is not a valid bundle or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except UnityBundleError as e:
        print(f'Error testing bundle "{args.bundle_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during test: {e}", file=sys.stderr)
        sys.exit(1)


# --- Main Execution ---


def main(argv=None):
    parser = argparse.ArgumentParser(description="UnityFS bundle CLI - Inspect and extract asset bundles.", epilog="Example: unity-bundle extract data.unity3d globalgamemanagers -d out")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    # --- List Command ---
    parser_list = subparsers.add_parser("list", help="List the entries of a bundle.")
    parser_list.add_argument("bundle_file", help="Path to the bundle file.")
    parser_list.add_argument("-l", "--long", action="store_true", help="Show size, offset and flags.")
    parser_list.set_defaults(func=handle_list)

    # --- Info Command ---
    parser_info = subparsers.add_parser("info", help="Show the bundle header.")
    parser_info.add_argument("bundle_file", help="Path to the bundle file.")
    parser_info.set_defaults(func=handle_info)

    # --- Extract Command ---
    parser_extract = subparsers.add_parser("extract", help="Extract entries from a bundle.")
    parser_extract.add_argument("bundle_file", help="Path to the bundle file.")
    parser_extract.add_argument("entries", nargs="*", help="Specific entry paths to extract (default: extract all).")
    parser_extract.add_argument("-d", "--destination", help="Directory to extract files to (default: current directory).")
    parser_extract.set_defaults(func=handle_extract)

    # --- Test Command ---
    parser_test = subparsers.add_parser("test", help="Reconstruct every entry and report failures.")
    parser_test.add_argument("bundle_file", help="Path to the bundle file.")
    parser_test.set_defaults(func=handle_test)

    # --- Parse Arguments ---
    if argv is None and len(sys.argv) == 1:
        parser.print_help(sys.stderr)
        sys.exit(1)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format="%(levelname)s: %(message)s")

    # --- Execute Command ---
    args.func(args)


if __name__ == "__main__":
    main()
