#!/usr/bin/env python3
"""
Validation script for the Guest Sync service.

Checks that dependencies and package modules import, that the example
configuration parses, and that the CLI answers --help.
"""

import os
import sys
import importlib
import subprocess

EXAMPLE_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.example.yaml')


def check_import(label, import_name):
    """Check if a package/module can be imported."""
    try:
        importlib.import_module(import_name)
        return True, f"✓ {label} available"
    except ImportError as e:
        return False, f"✗ {label} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]
    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for label, import_name in dependencies:
        ok, message = check_import(label, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok

    print("\n  Test dependencies:")
    for label, import_name in test_dependencies:
        _, message = check_import(label, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "guest_sync.config",
        "guest_sync.logging_setup",
        "guest_sync.retry",
        "guest_sync.dispatcher",
        "guest_sync.cache",
        "guest_sync.mapping",
        "guest_sync.desired_state",
        "guest_sync.refresher",
        "guest_sync.engine",
        "guest_sync.scheduler",
        "guest_sync.clients.graph",
        "guest_sync.clients.qlik",
        "guest_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_import(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_configuration():
    print("\n=== Configuration Validation ===")

    try:
        from guest_sync.config import ConfigLoader, SyncSettings
        config = ConfigLoader(EXAMPLE_CONFIG).load()
        settings = SyncSettings.from_config(config)
        print(f"  ✓ Example configuration loads ({len(settings.group_mappings)} group mappings)")
        return True
    except Exception as e:
        print(f"  ✗ Example configuration failed: {e}")
        return False


def validate_cli():
    print("\n=== CLI Validation ===")

    result = subprocess.run([sys.executable, "-m", "guest_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0:
        print("  ✓ Help command working")
        return True
    print(f"  ✗ Help command failed: {result.stderr.strip()}")
    return False


def main():
    print("Guest Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_configuration(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in tenant settings")
        print("  2. Export SOURCE_API_TOKEN and DIRECTORY_CLIENT_SECRET")
        print("  3. Test with: python -m guest_sync.main --health-check")
        print("  4. Run one cycle: python -m guest_sync.main --once")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
