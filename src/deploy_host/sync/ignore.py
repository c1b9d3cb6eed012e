"""Ignore rules for paths excluded from sync."""

from typing import Iterable, List


def normalize_path(path: str) -> str:
    """Use ``/`` separators and a leading ``/``."""
    path = path.replace("\\", "/")
    if not path.startswith("/"):
        path = "/" + path
    return path


class PathIgnoreMatcher:
    """Decides whether a relative path is excluded from sync.

    Rule forms:
        /folder/   folder in root
        /file.txt  file in root
        folder/    folder anywhere
        file.txt   file anywhere

    Folder paths must be passed with a trailing ``/``.
    """

    def __init__(self, rules: Iterable[str] = ()):
        self.rules: List[str] = [r.replace("\\", "/") for r in rules if r]

    def is_ignored(self, path: str) -> bool:
        if not path:
            return False
        path = normalize_path(path)
        for rule in self.rules:
            if rule.startswith("/"):
                if rule.endswith("/"):
                    if path.startswith(rule):
                        return True
                elif path == rule:
                    return True
            else:
                if rule.endswith("/"):
                    if ("/" + rule) in path:
                        return True
                elif path.endswith("/" + rule):
                    return True
        return False

    __call__ = is_ignored
