#!/usr/bin/env python3
"""
iOS Crash Symbolicator - Main Entry Point

Symbolicates, blames and converts iOS crash logs.
"""

import sys
import argparse
import logging
from pathlib import Path

# Add crash_symbolicator to path
sys.path.insert(0, str(Path(__file__).parent))


def _status(message: str):
    # Status goes to stderr so stdout carries only the rendered report
    print(message, file=sys.stderr)


def _load_symbol_maps(arguments):
    from crash_symbolicator.symbol_maps import load_symbol_map, parse_symbol_map_arg

    symbol_maps = {}
    for argument in arguments or []:
        image, path = parse_symbol_map_arg(argument)
        symbol_maps[image] = load_symbol_map(path)
        _status(f"[+] Loaded {len(symbol_maps[image])} symbols for {image} from {path}")
    return symbol_maps


def _blame_filter(args):
    from crash_symbolicator.blame import BlameFilter

    if args.filter_path:
        return BlameFilter.by_path(args.filter_path)
    if args.filter_package:
        return BlameFilter.by_package(args.filter_package)
    return BlameFilter.none()


def _blame(report, args, settings, owner=None):
    from crash_symbolicator.packages import DpkgPackageDatabase

    packages = DpkgPackageDatabase(settings.dpkg_root)
    if report.blame(_blame_filter(args), packages=packages, owner=owner,
                    own_path=settings.own_path):
        result = report.blame_result
        _status(f"[+] Blamed: {result.path} (frame {result.depth})")
        if result.package_id:
            _status(f"    Package: {result.package_id}")
    else:
        _status("[-] No binary image could be blamed")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='iOS Crash Symbolicator - Symbolicate and blame iOS crash logs',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Symbolicate and blame a crash log
  %(prog)s symbolicate MobileSafari.crash

  # Use a copy of the device filesystem for symbols
  %(prog)s symbolicate app.crash --system-root ~/device-root

  # Override an image's symbols with a symbol map
  %(prog)s symbolicate app.crash --symbol-map /Applications/Foo.app/Foo=foo.map

  # Blame only, ignoring a tweak
  %(prog)s blame app.crash --filter-path '/Library/MobileSubstrate/*'

  # Convert between text and property list forms
  %(prog)s convert app.crash --plist -o app.plist
        """
    )

    parser.add_argument(
        'command',
        choices=['symbolicate', 'blame', 'convert', 'test'],
        help='Command to execute'
    )

    parser.add_argument(
        'crash_file',
        nargs='?',
        help='Path to crash log (text or property list)'
    )

    parser.add_argument(
        '--output',
        '-o',
        help='Output file for the rendered report (default: console)'
    )

    parser.add_argument(
        '--plist',
        action='store_true',
        help='Render the report as a property list'
    )

    parser.add_argument(
        '--symbol-map',
        action='append',
        metavar='IMAGE=FILE',
        help='Symbol map overriding the symbols of IMAGE (path or UUID); repeatable'
    )

    parser.add_argument(
        '--system-root',
        help='Directory holding a copy of the device filesystem'
    )

    parser.add_argument(
        '--dpkg-root',
        help='Root directory containing var/lib/dpkg'
    )

    parser.add_argument(
        '--filter-path',
        action='append',
        metavar='PATTERN',
        help='Never blame images matching PATTERN; repeatable'
    )

    parser.add_argument(
        '--filter-package',
        action='append',
        metavar='PACKAGE',
        help='Never blame images installed by PACKAGE; repeatable'
    )

    parser.add_argument(
        '--no-symbols',
        action='store_true',
        help='Only use symbol maps, do not read symbol tables from binaries'
    )

    parser.add_argument(
        '--workers',
        type=int,
        help='Number of threads used to resolve frames'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args(argv)

    if args.command == 'test':
        print("Running test suite...")
        import pytest
        return pytest.main(['tests/', '-v'])

    if not args.crash_file:
        parser.error(f"{args.command} command requires crash_file argument")
    if args.filter_path and args.filter_package:
        parser.error("--filter-path and --filter-package cannot be combined")

    from crash_symbolicator.config import Settings
    from crash_symbolicator.errors import SymbolicateError
    from crash_symbolicator.report import CrashReport

    settings = Settings.from_env()
    if args.system_root:
        settings.system_root = args.system_root
    if args.dpkg_root:
        settings.dpkg_root = args.dpkg_root
    if args.workers:
        settings.max_workers = max(1, args.workers)
    settings.verbose = settings.verbose or args.verbose

    logging.basicConfig(
        level=logging.DEBUG if settings.verbose else logging.WARNING,
        format='[%(levelname)s] %(name)s: %(message)s',
    )

    try:
        report = CrashReport.from_file(args.crash_file)
    except OSError as e:
        _status(f"[-] Cannot read {args.crash_file}: {e}")
        return 1
    except SymbolicateError as e:
        _status(f"[-] {args.crash_file}: {e}")
        return 1

    try:
        if args.command == 'symbolicate':
            from crash_symbolicator.symbol_owner import NmSymbolOwner, SymbolOwner
            from crash_symbolicator.symbolicator import Symbolicator

            _status(f"Symbolicating: {args.crash_file}")
            try:
                symbol_maps = _load_symbol_maps(args.symbol_map)
            except (OSError, ValueError) as e:
                _status(f"[-] Bad symbol map: {e}")
                return 1

            if args.no_symbols:
                owner = SymbolOwner()
            else:
                owner = NmSymbolOwner(settings.system_root, settings.nm_path)
            symbolicator = Symbolicator(owner)
            report.symbolicate(symbolicator, symbol_maps, settings.max_workers)
            stats = symbolicator.get_statistics()
            _status(f"[+] Resolved {stats['frames_resolved']} frames, "
                    f"{stats['frames_unresolved']} without an image")
            _blame(report, args, settings, owner)

        elif args.command == 'blame':
            _status(f"Blaming: {args.crash_file}")
            _blame(report, args, settings)
    except SymbolicateError as e:
        _status(f"[-] {e}")
        return 1

    as_plist = args.plist or report.is_property_list
    if args.output:
        if not report.write_to_file(args.output, force_property_list=args.plist):
            _status(f"[-] Could not write {args.output}")
            return 1
        _status(f"[+] Report saved to: {args.output}")
    else:
        print(report.string_representation(as_plist))
    return 0


if __name__ == '__main__':
    sys.exit(main())
