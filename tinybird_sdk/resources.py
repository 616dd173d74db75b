import glob
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

import aiofiles

DATASOURCE_EXTENSION = "datasource"
PIPE_EXTENSION = "pipe"
CONNECTION_EXTENSION = "connection"
RESOURCE_EXTENSIONS = (DATASOURCE_EXTENSION, PIPE_EXTENSION, CONNECTION_EXTENSION)

GLOB_CHARS = ("*", "?", "[")


class ResourceException(Exception):
    pass


@dataclass
class Resource:
    name: str
    content: str


@dataclass
class GeneratedResources:
    datasources: List[Resource] = field(default_factory=list)
    pipes: List[Resource] = field(default_factory=list)
    connections: List[Resource] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.datasources or self.pipes or self.connections)

    def files(self) -> List[Tuple[str, str]]:
        """(filename, content) pairs in the order they are sent to the API"""
        return (
            [(f"{r.name}.{DATASOURCE_EXTENSION}", r.content) for r in self.datasources]
            + [(f"{r.name}.{PIPE_EXTENSION}", r.content) for r in self.pipes]
            + [(f"{r.name}.{CONNECTION_EXTENSION}", r.content) for r in self.connections]
        )


def _is_glob(pattern: str) -> bool:
    return any(c in pattern for c in GLOB_CHARS)


def get_resource_filenames(include: List[str], cwd: str) -> List[str]:
    filenames: List[str] = []
    for entry in include:
        path = entry if os.path.isabs(entry) else os.path.join(cwd, entry)
        if _is_glob(entry):
            matches = glob.glob(path, recursive=True)
        elif os.path.isdir(path):
            matches = []
            for extension in RESOURCE_EXTENSIONS:
                matches += glob.glob(os.path.join(path, "**", f"*.{extension}"), recursive=True)
        elif os.path.isfile(path):
            matches = [path]
        else:
            raise ResourceException(f"Include path '{entry}' does not exist")

        for filename in matches:
            if Path(filename).suffix.lstrip(".") not in RESOURCE_EXTENSIONS:
                continue
            filename = os.path.abspath(filename)
            if filename not in filenames:
                filenames.append(filename)
    return filenames


async def load_resources(include: List[str], cwd: str) -> GeneratedResources:
    by_kind: Dict[str, Dict[str, Resource]] = {extension: {} for extension in RESOURCE_EXTENSIONS}

    for filename in get_resource_filenames(include, cwd):
        path = Path(filename)
        kind = path.suffix.lstrip(".")
        if path.stem in by_kind[kind]:
            raise ResourceException(f"Duplicated {kind} '{path.stem}' in {filename}")
        async with aiofiles.open(filename, "r", encoding="utf-8") as file:
            content = await file.read()
        by_kind[kind][path.stem] = Resource(name=path.stem, content=content)

    def _sorted(kind: str) -> List[Resource]:
        return sorted(by_kind[kind].values(), key=lambda r: r.name)

    return GeneratedResources(
        datasources=_sorted(DATASOURCE_EXTENSION),
        pipes=_sorted(PIPE_EXTENSION),
        connections=_sorted(CONNECTION_EXTENSION),
    )
