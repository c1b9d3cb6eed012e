"""Command line entry point: deploy-host <cms_url> <target_path> [options]."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from pydantic import ValidationError

from deploy_host.core.config import Settings
from deploy_host.main import run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deploy-host", description="CMS deployment host")
    parser.add_argument("cms_url", help="URL of the CMS server, ex: https://instance.example.com:3000")
    parser.add_argument("target_path", help="Where CMS files will be copied. Use \".\" for current directory")
    parser.add_argument("--user", dest="username", help="CMS login username")
    parser.add_argument("--password", help="CMS login password")
    parser.add_argument("--host-id", dest="host_id", help="Host ID shown in the deployment wizard (default: machine name)")
    parser.add_argument("--log", dest="log_path", help="Log messages and errors to this file or folder")
    parser.add_argument("--delete-excess-files", action="store_true", default=None,
                        help="Delete files in target_path that are not in the publish build")
    parser.add_argument("--overwrite-all", action="store_true", default=None,
                        help="Always replace all local files instead of comparing hashes")
    parser.add_argument("--ignore-cert-errors", action="store_true", default=None,
                        help="Ignore certificate errors (ex. self-signed certificates)")
    parser.add_argument("--ignore-path", dest="ignore_paths", action="append",
                        help="Ignore a file or folder: folder/ file.txt /folder/ /file.txt")
    parser.add_argument("--download", dest="download_deployment", type=int,
                        help="Download an individual deployment and exit")
    parser.add_argument("--login-cache", dest="login_cache_file", help="Persist session tokens to this file")
    parser.add_argument("--max-archive-size", dest="max_archive_size", type=int,
                        help="Reject deployment archives larger than this many bytes")
    parser.add_argument("--log-level", dest="log_level")
    parser.add_argument("--log-format", dest="log_format", choices=["json", "console"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        for err in e.errors():
            print(err["msg"], file=sys.stderr)
        return 1
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
