#!/usr/bin/env python3
"""
Installation check for krb5-sync.

Confirms that the libraries the plugin and queue backend need can be
imported, and that the configuration loads and the queue directory is
usable.
"""

import os
import sys
import importlib


def check_import(display_name, import_name):
    """Check if a package/module can be imported."""
    try:
        importlib.import_module(import_name)
        return True, f"✓ {display_name} available"
    except ImportError as e:
        return False, f"✗ {display_name} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("gssapi", "gssapi"),
    ]

    all_ok = True
    for display_name, import_name in dependencies:
        ok, message = check_import(display_name, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_modules():
    print("\n=== Module Validation ===")

    modules = [
        "krb5_sync.principal",
        "krb5_sync.config",
        "krb5_sync.kdb",
        "krb5_sync.queue",
        "krb5_sync.ad_client",
        "krb5_sync.engine",
        "krb5_sync.hook",
        "krb5_sync.backend",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_import(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_configuration(config_path=None):
    print("\n=== Configuration Validation ===")

    from krb5_sync.config import load_config
    from krb5_sync.errors import ConfigError

    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"  ✗ {e}")
        return False

    if config.ad_configured:
        print(f"  ✓ Synchronizing {', '.join(config.instance_list)} to {config.ad_admin_server}")
    else:
        print("  ✓ Configuration loaded, Active Directory synchronization not configured")

    if not os.path.isdir(config.queue_dir):
        print(f"  ✗ Queue directory {config.queue_dir} does not exist")
        return False
    if not os.access(config.queue_dir, os.W_OK | os.X_OK):
        print(f"  ✗ Queue directory {config.queue_dir} is not writable")
        return False
    print(f"  ✓ Queue directory {config.queue_dir}")
    return True


def main():
    print("krb5-sync - Installation Validation")
    print("=" * 50)

    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    results = [validate_dependencies(), validate_modules()]
    if all(results):
        results.append(validate_configuration(config_path))

    print("\n=== Summary ===")
    if all(results):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Load the hook from kadmind with the configuration path")
        print("  2. Check directory access with: krb5-sync-backend health-check")
        print("  3. Schedule: krb5-sync-backend process")
        return 0

    print("✗ Some validations failed!")
    return 1


if __name__ == "__main__":
    sys.exit(main())
