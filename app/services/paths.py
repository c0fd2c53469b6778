# app/services/paths.py
"""Materialized path helpers for the document tree.

Every folder and file stores its full path (``/Manuals/2024/spec.pdf``) next to
its parent pointer. These functions are the only place paths are built, both
when a node is created and when a rename or move cascades through a subtree.
Names are joined as-is; request validation keeps ``/`` out of them.
"""
from typing import Dict, Iterable, Optional, Tuple


def compute_folder_path(parent_path: Optional[str], name: str) -> str:
    if parent_path is not None:
        return f"{parent_path}/{name}"
    return f"/{name}"


def compute_file_path(folder_path: Optional[str], file_name: str) -> str:
    if folder_path is not None:
        return f"{folder_path}/{file_name}"
    return f"/{file_name}"


def materialize_paths(folders: Iterable, files: Iterable) -> Dict[Tuple[str, int], str]:
    """Recompute every path of a tree from parent pointers alone.

    ``folders`` need ``id``, ``name`` and ``parent_id``; ``files`` need ``id``,
    ``file_name`` and ``folder_id``. Stored ``path`` values are never read, so
    the result can be compared against them to detect drift.

    Returns a mapping of ``("folder", id)`` / ``("file", id)`` to path.
    """
    by_id = {folder.id: folder for folder in folders}
    folder_paths: Dict[int, str] = {}

    def resolve(folder_id: int) -> str:
        # Walk up to the first resolved ancestor, then fill paths back down
        chain = []
        current = folder_id
        while current is not None and current not in folder_paths:
            if current in chain:
                raise ValueError(f"Folder {current} is its own ancestor")
            chain.append(current)
            current = by_id[current].parent_id
        parent_path = folder_paths[current] if current is not None else None
        for node_id in reversed(chain):
            parent_path = compute_folder_path(parent_path, by_id[node_id].name)
            folder_paths[node_id] = parent_path
        return folder_paths[folder_id]

    result: Dict[Tuple[str, int], str] = {}
    for folder_id in by_id:
        result[("folder", folder_id)] = resolve(folder_id)
    for file in files:
        folder_path = resolve(file.folder_id) if file.folder_id is not None else None
        result[("file", file.id)] = compute_file_path(folder_path, file.file_name)
    return result
