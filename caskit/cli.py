"""Command-line interface for caskit.

This module provides the ``caskit`` command for building, testing,
validating, packaging and signing CAS plugins.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from caskit.__version__ import __version__
from caskit.build.analyzer import BundleReport, format_size
from caskit.build.builder import BuildOrchestrator
from caskit.build.config import BuildConfig, BuildMode
from caskit.build.context import ConfigLoader, PluginContext
from caskit.build.result import BuildResult, Diagnostic
from caskit.build.session import SessionSnapshot, StageState
from caskit.build.watcher import ShutdownScope
from caskit.core.logging_manager import LoggingManager
from caskit.plugin_system.package import PackageFormat, PackageOptions
from caskit.plugin_system.signing import PRIVATE_KEY_ENV
from caskit.plugin_system.testing import TestConfig, TestFramework, TestRunSummary
from caskit.plugin_system.tools import (
    ValidationReport,
    build_plugin,
    create_signing_key,
    load_plugin,
    package_plugin,
    run_plugin_tests,
    validate_plugin,
    verify_package,
)


def _load_context(args: argparse.Namespace, overrides: Optional[Dict[str, Any]] = None) -> PluginContext:
    return load_plugin(args.root, args.config, overrides)


def _print_diagnostics(errors: Sequence[Diagnostic], warnings: Sequence[Diagnostic]) -> None:
    for warning in warnings:
        print(f"  warning: {warning}")
    for error in errors:
        print(f"  error: {error}", file=sys.stderr)


def _build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Command line build settings; None means the flag was not given."""
    return {
        "output": {
            "format": args.target,
            "sourcemap": args.sourcemap,
            "clean": args.clean,
        },
        "optimization": {
            "minify": args.minify,
            "bundleAnalysis": True if args.analyze else None,
        },
    }


def _print_build_result(result: BuildResult, report: Optional[BundleReport], reporter: str) -> None:
    if reporter == "json":
        data = {"build": result.to_dict(), "analysis": report.to_dict() if report else None}
        print(json.dumps(data, indent=2))
        return

    if result.success:
        print(f"Build successful in {result.duration:.2f}s")
        print(f"  Output size: {format_size(result.size)}")
        print(
            f"  Chunks: {result.stats.chunks}  Modules: {result.stats.modules}  "
            f"Assets: {result.stats.assets}"
        )
    else:
        print(f"Build failed after {result.duration:.2f}s", file=sys.stderr)
    _print_diagnostics(result.errors, result.warnings)

    if report is not None:
        print("\nBundle analysis:")
        print(f"  Total size: {format_size(report.total_size)}")
        for kind, size in sorted(report.size_by_kind().items()):
            print(f"  {kind}: {format_size(size)}")
        print("  Largest files:")
        for output_file in report.largest(5):
            print(f"    {output_file.path} ({format_size(output_file.size)})")
        for suggestion in report.suggestions:
            print(f"  suggestion: {suggestion}")


def _print_stage_result(result: BuildResult) -> None:
    stage = result.stage or "build"
    status = "ok" if result.success else "failed"
    print(f"[{stage}] {status} in {result.duration:.2f}s")
    _print_diagnostics(result.errors, result.warnings)


def _print_settled(snapshot: SessionSnapshot) -> None:
    if snapshot.success:
        print(f"Watch build #{snapshot.generation} is up to date")
    else:
        failed = [stage for stage, state in snapshot.states.items() if state is StageState.FAILED]
        print(f"Watch build #{snapshot.generation} has errors in: {', '.join(failed)}")


def _watch(context: PluginContext, overrides: Dict[str, Any], parallel: bool = True) -> int:
    """Run watch loops until interrupted.

    Every rebuild reloads the configuration so edits to ``cas.config.*``
    take effect without restarting.
    """
    loader = ConfigLoader()
    orchestrator = BuildOrchestrator()

    def reload() -> BuildConfig:
        return loader.rebuild_config(context, overrides)

    with ShutdownScope() as scope:
        scope.install_signal_handlers()
        if parallel:
            orchestrator.watch(
                context.build_config,
                _print_stage_result,
                scope,
                on_settled=_print_settled,
                reload=reload,
            )
        else:
            orchestrator.watch_sequential(context.build_config, _print_stage_result, scope, reload=reload)
        print("Watching for changes. Press Ctrl+C to stop.")
        while not scope.wait(0.5):
            pass

    print("Watch mode stopped")
    return 0


def build_command(args: argparse.Namespace) -> int:
    """Handle the build command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        overrides = _build_overrides(args)
        context = _load_context(args, overrides)

        if args.watch:
            return _watch(context, overrides)

        result, report = build_plugin(context, BuildMode(args.mode), analyze=args.analyze)
        _print_build_result(result, report, args.reporter)
        return 0 if result.success else 1

    except Exception as e:
        print(f"Error building plugin: {e}", file=sys.stderr)
        return 1


def dev_command(args: argparse.Namespace) -> int:
    """Handle the dev command.

    Builds in development mode with source maps. Serving the plugin is left
    to the platform's development server.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    if args.serve_only:
        print(
            "Serving is handled by the platform dev server; run it against the build output instead",
            file=sys.stderr,
        )
        return 1

    try:
        overrides: Dict[str, Any] = {"output": {"sourcemap": True}}
        context = _load_context(args, overrides)

        if args.build_only:
            result, _ = build_plugin(context, BuildMode.DEVELOPMENT)
            _print_build_result(result, None, "console")
            return 0 if result.success else 1

        return _watch(context, overrides, parallel=args.parallel)

    except Exception as e:
        print(f"Error starting development build: {e}", file=sys.stderr)
        return 1


def _print_test_summary(summary: TestRunSummary) -> None:
    print("\nTest results:")
    if summary.degraded:
        print("  Detailed results unavailable")
    else:
        print(
            f"  Tests: {summary.passed} passed, {summary.failed} failed, "
            f"{summary.pending} pending, {summary.total} total"
        )
        if summary.snapshots_passed or summary.snapshots_failed:
            print(f"  Snapshots: {summary.snapshots_passed} passed, {summary.snapshots_failed} failed")
    if summary.coverage is not None:
        coverage = summary.coverage
        print(
            f"  Coverage: statements {coverage.statements:.1f}%, branches {coverage.branches:.1f}%, "
            f"functions {coverage.functions:.1f}%, lines {coverage.lines:.1f}%"
        )
    for warning in summary.warnings:
        print(f"  warning: {warning}")
    print(f"  Time: {summary.duration:.2f}s")
    print("Tests passed" if summary.success else "Tests failed")


def test_command(args: argparse.Namespace) -> int:
    """Handle the test command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        context = _load_context(args)
        config = TestConfig.from_settings(
            context.test_settings,
            framework=TestFramework(args.framework) if args.framework else None,
            coverage=args.coverage or None,
            watch=args.watch or None,
            test_name_pattern=args.test_name_pattern,
            test_path_pattern=args.pattern,
            verbose=args.verbose or None,
            ci=args.ci or None,
            coverage_threshold=args.coverage_threshold,
        )

        summary = run_plugin_tests(context, config, on_output=lambda line: print(line, end=""))
        _print_test_summary(summary)
        return 0 if summary.success else 1

    except Exception as e:
        print(f"Error running tests: {e}", file=sys.stderr)
        return 1


def package_command(args: argparse.Namespace) -> int:
    """Handle the package command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        context = _load_context(args)
        settings = context.package_settings

        options = PackageOptions(
            format=PackageFormat(args.format or settings.get("format", PackageFormat.ZIP.value)),
            output_path=Path(args.output) if args.output else None,
            sign=not args.no_sign and bool(settings.get("sign", True)),
            compress=not args.no_compress and bool(settings.get("compress", True)),
            include_dev=args.include_dev,
            generate_checksum=args.checksum or bool(settings.get("checksum", False)),
        )

        print(f"Packaging plugin: {context.manifest.id} {context.manifest.version}")
        result = package_plugin(context, options, skip_validation=args.skip_validation)
        _print_diagnostics(result.errors, result.warnings)

        if not result.success:
            print("Packaging failed", file=sys.stderr)
            return 1

        print(f"Created plugin package: {result.output_path}")
        print(f"  Size: {format_size(result.size)}")
        print(f"  Files: {result.file_count}")
        if result.signature_path:
            print(f"  Signature: {result.signature_path}")
        if result.checksum:
            print(f"  SHA-256: {result.checksum}")
        return 0

    except Exception as e:
        print(f"Error packaging plugin: {e}", file=sys.stderr)
        return 1


def _print_validation_table(report: ValidationReport) -> None:
    print(f"{'PASS':<15}{'STATUS':<10}{'ERRORS':>8}{'WARNINGS':>10}")
    for name, result in report.passes.items():
        if result is None:
            print(f"{name:<15}{'skipped':<10}{'-':>8}{'-':>10}")
            continue
        status = "passed" if result.valid else "failed"
        print(f"{name:<15}{status:<10}{len(result.errors):>8}{len(result.warnings):>10}")

    combined = report.combined
    if combined.errors or combined.warnings:
        print()
    for issue in combined.errors + combined.warnings:
        location = f" ({issue.path})" if issue.path else ""
        print(f"{issue.severity.value.upper()}: {issue.code}: {issue.message}{location}")

    print("\nPlugin is valid" if report.valid else "\nPlugin validation failed")


def validate_command(args: argparse.Namespace) -> int:
    """Handle the validate command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        report = validate_plugin(
            args.root,
            args.config,
            strict=args.strict,
            skip_manifest=args.skip_manifest,
            skip_deps=args.skip_deps,
            skip_security=args.skip_security,
        )

        if args.output == "json":
            print(json.dumps(report.to_dict(), indent=2))
        elif args.output == "yaml":
            print(yaml.safe_dump(report.to_dict(), sort_keys=False), end="")
        else:
            _print_validation_table(report)

        return 0 if report.valid else 1

    except Exception as e:
        print(f"Error validating plugin: {e}", file=sys.stderr)
        return 1


def keygen_command(args: argparse.Namespace) -> int:
    """Handle the keygen command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        output_path = Path(args.path)
        if output_path.exists() and not args.force:
            print(f"Output file already exists: {output_path}")
            print("Use --force to overwrite")
            return 1

        key = create_signing_key(output_path)

        print(f"Saved private key to: {key.private_path}")
        print(f"Saved public key to: {key.public_path}")
        print(f"Fingerprint: {key.fingerprint}")
        print(f"Set {PRIVATE_KEY_ENV} to the private key's contents to sign packages")
        return 0

    except Exception as e:
        print(f"Error generating signing key: {e}", file=sys.stderr)
        return 1


def verify_command(args: argparse.Namespace) -> int:
    """Handle the verify command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        result = verify_package(args.archive, public_key=args.public_key, checksum=args.checksum)

        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)
        if result.signature_valid is True:
            print(f"Package signature is valid: {result.archive}")
        elif result.signature_valid is False:
            print(f"Package signature verification failed: {result.archive}")
        elif not result.errors:
            print(f"Package is not signed: {result.archive}")
        if result.checksum_valid is True:
            print("Checksum matches")
        elif result.checksum_valid is False:
            print("Checksum does not match")

        return 0 if result.success else 1

    except Exception as e:
        print(f"Error verifying package: {e}", file=sys.stderr)
        return 1


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line interface.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    # Create argument parser
    parser = argparse.ArgumentParser(
        prog="caskit",
        description="Build, test, validate and package CAS plugins",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored log output")
    parser.add_argument("--config", help="Configuration file (defaults to cas.config.* in the plugin root)")
    parser.add_argument("--root", default=".", help="Plugin root directory")

    # Add subparsers for commands
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Build command
    build_parser = subparsers.add_parser("build", help="Build the plugin")
    build_parser.add_argument("--watch", action="store_true", help="Rebuild on changes")
    build_parser.add_argument("--target", choices=["esm", "cjs", "umd"], help="Output module format")
    build_parser.add_argument("--minify", action=argparse.BooleanOptionalAction, help="Minify the output")
    build_parser.add_argument("--sourcemap", action=argparse.BooleanOptionalAction, help="Emit source maps")
    build_parser.add_argument("--analyze", action="store_true", help="Analyze bundle sizes after the build")
    build_parser.add_argument(
        "--mode", choices=[m.value for m in BuildMode], default=BuildMode.PRODUCTION.value, help="Build mode"
    )
    build_parser.add_argument("--clean", action=argparse.BooleanOptionalAction, help="Clean the output directory first")
    build_parser.add_argument("--reporter", choices=["console", "json"], default="console", help="Result format")

    # Dev command
    dev_parser = subparsers.add_parser("dev", help="Build in development mode and watch for changes")
    dev_mode = dev_parser.add_mutually_exclusive_group()
    dev_mode.add_argument("--build-only", action="store_true", help="Run one development build and exit")
    dev_mode.add_argument("--serve-only", action="store_true", help="Serve without building (not supported)")
    dev_parser.add_argument(
        "--parallel",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Watch each stage in its own loop instead of rebuilding everything in one",
    )

    # Test command
    test_parser = subparsers.add_parser("test", help="Run plugin tests")
    test_parser.add_argument("pattern", nargs="?", help="Only run test files matching this pattern")
    test_parser.add_argument("--framework", choices=[f.value for f in TestFramework], help="Test framework")
    test_parser.add_argument("--watch", action="store_true", help="Re-run tests on changes")
    test_parser.add_argument("--coverage", action="store_true", help="Collect coverage")
    test_parser.add_argument(
        "--coverage-threshold", type=float, help="Fail when any coverage metric is below this percentage"
    )
    test_parser.add_argument("-t", "--test-name-pattern", help="Only run tests whose name matches")
    test_parser.add_argument("--ci", action="store_true", help="Non-interactive run for CI")

    # Package command
    package_parser = subparsers.add_parser("package", help="Package the plugin for distribution")
    package_parser.add_argument("--format", choices=[f.value for f in PackageFormat], help="Archive format")
    package_parser.add_argument("--output", "-o", help="Output path")
    package_parser.add_argument("--no-sign", action="store_true", help="Do not sign the package")
    package_parser.add_argument("--no-compress", action="store_true", help="Store archive members uncompressed")
    package_parser.add_argument("--include-dev", action="store_true", help="Ship package.json unchanged")
    package_parser.add_argument("--checksum", action="store_true", help="Print the SHA-256 of the package")
    package_parser.add_argument("--skip-validation", action="store_true", help="Skip manifest validation")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate the plugin")
    validate_parser.add_argument("--strict", action="store_true", help="Treat advisories as errors")
    validate_parser.add_argument("--skip-manifest", action="store_true", help="Skip the manifest pass")
    validate_parser.add_argument("--skip-deps", action="store_true", help="Skip the dependency pass")
    validate_parser.add_argument("--skip-security", action="store_true", help="Skip the security pass")
    validate_parser.add_argument(
        "--output", choices=["table", "json", "yaml"], default="table", help="Report format"
    )

    # Keygen command
    keygen_parser = subparsers.add_parser("keygen", help="Generate a package signing key")
    keygen_parser.add_argument("path", help="Private key path; the public key gets a .pub suffix")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing key file")

    # Verify command
    verify_parser = subparsers.add_parser("verify", help="Verify a package's signature and checksum")
    verify_parser.add_argument("archive", help="Plugin package")
    verify_parser.add_argument("--public-key", help="PEM public key to check the signature with")
    verify_parser.add_argument("--checksum", help="Expected SHA-256 hex digest")

    # Parse arguments
    args = parser.parse_args(args)

    logging_manager = LoggingManager({"level": "debug" if args.verbose else "warning", "color": not args.no_color})
    logging_manager.initialize()

    # Execute command
    try:
        if args.command == "build":
            return build_command(args)
        elif args.command == "dev":
            return dev_command(args)
        elif args.command == "test":
            return test_command(args)
        elif args.command == "package":
            return package_command(args)
        elif args.command == "validate":
            return validate_command(args)
        elif args.command == "keygen":
            return keygen_command(args)
        elif args.command == "verify":
            return verify_command(args)
        else:
            parser.print_help()
            return 1
    finally:
        logging_manager.shutdown()


if __name__ == "__main__":
    sys.exit(main())
