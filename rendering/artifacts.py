"""
Memoized compilation of visualization artifacts.

The sandbox is stateless; re-renders of the same artifact (every streamed
chunk re-parses the message) would recompile identical source.  The
compiler caches the compiled module by exact source text and applies
props per call.  Failures are not cached, so a fixed esbuild install or a
retry after a transient timeout compiles again.
"""

import threading
from collections import OrderedDict
from dataclasses import replace
from typing import Optional

from agent.messages import canonical_json

from . import jsx_sandbox
from .jsx_sandbox import RenderableComponent, SandboxError


class ArtifactCompiler:
    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._compiled: OrderedDict[str, RenderableComponent] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def render(self, code: str, props: Optional[dict] = None) -> RenderableComponent:
        """Compile ``code`` once; later calls with the same text reuse it.

        Raises:
            SandboxError: Propagated from ``jsx_sandbox.execute``.
        """
        with self._lock:
            cached = self._compiled.get(code)
            if cached is not None:
                self._compiled.move_to_end(code)
                self.hits += 1
        if cached is not None:
            return replace(cached, props_json=canonical_json(props or {}))

        component = jsx_sandbox.execute(code, props)
        with self._lock:
            self.misses += 1
            self._compiled[code] = component
            self._compiled.move_to_end(code)
            while len(self._compiled) > self.max_size:
                self._compiled.popitem(last=False)
        return component

    def render_all(self, artifacts) -> list[dict]:
        """Compile every ``Artifact``; one failure does not stop the rest."""
        results = []
        for artifact in artifacts:
            entry = {"artifactId": artifact.id, "messageId": artifact.message_id}
            try:
                entry["component"] = self.render(artifact.code).to_dict()
            except SandboxError as e:
                entry["error"] = e.to_dict()
            results.append(entry)
        return results

    def clear(self) -> None:
        with self._lock:
            self._compiled.clear()
            self.hits = self.misses = 0

    def stats(self) -> dict:
        with self._lock:
            return {"size": len(self._compiled), "max_size": self.max_size,
                    "hits": self.hits, "misses": self.misses}


_compiler: Optional[ArtifactCompiler] = None
_compiler_lock = threading.Lock()


def get_artifact_compiler() -> ArtifactCompiler:
    global _compiler
    if _compiler is None:
        with _compiler_lock:
            if _compiler is None:
                _compiler = ArtifactCompiler()
    return _compiler


def reset_artifact_compiler() -> None:
    global _compiler
    with _compiler_lock:
        _compiler = None
