#!/usr/bin/env python3
"""
GGUF Model Analyzer
Reads GGUF model files (local, split into shards, or remote) into the
metadata and tensor list used for tensor placement.
"""

import os
import re
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
from gguf import GGUFReader, GGUFValueType

from tensor_override.errors import ModelLoadError

# model-00001-of-00003.gguf
SHARD_PATTERN = re.compile(r"^(.+?)-(\d{5})-of-(\d{5})\.gguf$")
DOWNLOAD_CHUNK_BYTES = 8 * 1024 * 1024


@dataclass(frozen=True)
class TensorInfo:
    name: str
    quant_type: str
    shape: Tuple[int, ...]

    @property
    def block_id(self) -> Optional[int]:
        """Index of the transformer block encoded in the name, e.g. blk.12.attn_q.weight"""
        for segment in self.name.split("."):
            if segment.isdigit():
                return int(segment)
        return None

    @property
    def n_elements(self) -> int:
        count = 1
        for dim in self.shape:
            count *= int(dim)
        return count


@dataclass(frozen=True)
class ModelInfo:
    architecture: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    tensors: Tuple[TensorInfo, ...] = ()


def shard_paths(model_path: str) -> List[str]:
    """Expand the first shard of a split model into every shard path, in order."""
    directory, filename = os.path.split(model_path)
    match = SHARD_PATTERN.match(filename)
    if not match:
        return [model_path]

    base_name, total = match.group(1), int(match.group(3))
    return [
        os.path.join(directory, f"{base_name}-{i:05d}-of-{total:05d}.gguf")
        for i in range(1, total + 1)
    ]


def shard_urls(url: str) -> List[str]:
    match = re.match(r"^(.+?)-(\d{5})-of-(\d{5})\.gguf(\?.*)?$", url)
    if not match:
        return [url]

    base_url, total, query = match.group(1), int(match.group(3)), match.group(4) or ""
    return [f"{base_url}-{i:05d}-of-{total:05d}.gguf{query}" for i in range(1, total + 1)]


class GGUFAnalyzer:
    def __init__(self, download_dir: Optional[str] = None, verbose: bool = False):
        self.download_dir = download_dir
        self.verbose = verbose

    def load(self, source: str) -> ModelInfo:
        """Load a model from a local path or an http(s) URL"""
        if source.startswith(("http://", "https://")):
            if self.download_dir:
                return self.read_shards(self.download(source, self.download_dir))
            # no cache directory configured: the download lives only as long as the read
            with tempfile.TemporaryDirectory(prefix="tensor-override-") as target_dir:
                return self.read_shards(self.download(source, target_dir))

        paths = shard_paths(source)
        missing = [p for p in paths if not os.path.isfile(p)]
        if missing:
            raise ModelLoadError(f"Model file not found: {', '.join(missing)}")
        return self.read_shards(paths)

    def read_shards(self, paths: List[str]) -> ModelInfo:
        """Read every shard; metadata comes from the first, tensors are concatenated"""
        architecture = None
        metadata: Dict[str, Any] = {}
        tensors: List[TensorInfo] = []

        for index, path in enumerate(paths):
            if self.verbose:
                print(f"Reading shard {index + 1} of {len(paths)}: {path}")
            try:
                reader = GGUFReader(path, "r")
            except (OSError, ValueError) as e:
                raise ModelLoadError(f"Could not read GGUF file {path}: {e}") from e

            if index == 0:
                metadata = self._read_metadata(reader)
                architecture = metadata.get("general.architecture")
            tensors.extend(self._read_tensors(reader))

        if not architecture:
            raise ModelLoadError(f"Missing general.architecture in {paths[0]}")

        return ModelInfo(architecture=str(architecture), metadata=metadata, tensors=tuple(tensors))

    def _read_metadata(self, reader: GGUFReader) -> Dict[str, Any]:
        metadata = {}
        for reader_field in reader.fields.values():
            # vocab and merges arrays are large and never needed for placement
            if not reader_field.types or reader_field.types[:1] == [GGUFValueType.ARRAY]:
                continue
            metadata[reader_field.name] = reader_field.contents()
        return metadata

    def _read_tensors(self, reader: GGUFReader) -> List[TensorInfo]:
        return [
            TensorInfo(
                name=tensor.name,
                quant_type=tensor.tensor_type.name,
                shape=tuple(int(dim) for dim in tensor.shape.tolist()),
            )
            for tensor in reader.tensors
        ]

    def download(self, url: str, target_dir: str) -> List[str]:
        """Stream every shard of a remote model into target_dir"""
        Path(target_dir).mkdir(parents=True, exist_ok=True)

        urls = shard_urls(url)
        paths = []
        for index, shard_url in enumerate(urls):
            filename = shard_url.split("?", 1)[0].rsplit("/", 1)[-1]
            path = os.path.join(target_dir, filename)
            print(f"Downloading part {index + 1} of {len(urls)} from {shard_url}")
            self._download_file(shard_url, path)
            paths.append(path)
        return paths

    def _download_file(self, url: str, path: str):
        if os.path.isfile(path):
            print(f"Using cached download: {path}", file=sys.stderr)
            return

        partial_path = path + ".part"
        try:
            with requests.get(url, stream=True, timeout=30) as response:
                response.raise_for_status()
                with open(partial_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                        f.write(chunk)
            os.replace(partial_path, path)
        except (requests.RequestException, OSError) as e:
            if os.path.exists(partial_path):
                os.remove(partial_path)
            raise ModelLoadError(f"Failed to download {url}: {e}") from e


def print_model_summary(model: ModelInfo):
    """Print a summary of the loaded model"""
    print("\nGGUF Model Summary:")
    print("=" * 50)
    print(f"Architecture: {model.architecture}")
    print(f"Total tensors: {len(model.tensors)}")

    types: Dict[str, int] = {}
    for tensor in model.tensors:
        types[tensor.quant_type] = types.get(tensor.quant_type, 0) + 1
    for quant_type, count in sorted(types.items()):
        print(f"  - type {quant_type}: {count} tensors")
