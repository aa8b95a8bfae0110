"""
LaTeX rendering service.

Turns a validated RenderPayload into PDF bytes:

1. the template descriptor selects a registered template file (under
   ``settings.template_dir``) or inline template source
2. Jinja2 renders it with LaTeX-safe delimiters and StrictUndefined,
   using the payload bindings as the context
3. LuaLaTeX compiles the result in a scratch directory

Design guarantees:
- Deterministic template rendering (same payload, same .tex source)
- No shell escape; compilation halts on the first LaTeX error
- Compilation runs in a worker thread, never on the event loop

Text bindings are not escaped implicitly. Templates apply the ``latex``
filter to anything user-supplied.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Type

import anyio.to_thread
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from issuance.app.core.config import Settings
from issuance.app.core.errors import UpstreamError
from issuance.app.schemas.render_payload import (
    InlineTemplate,
    RegisteredTemplate,
    RenderPayload,
)

logger = logging.getLogger("issuance.renderer")


class TemplateRenderError(UpstreamError):
    """Raised when template rendering or LaTeX compilation fails."""


_LATEX_SPECIALS = {
    "\\": r"\textbackslash{}",
    "&": r"\&",
    "%": r"\%",
    "$": r"\$",
    "#": r"\#",
    "_": r"\_",
    "{": r"\{",
    "}": r"\}",
    "~": r"\textasciitilde{}",
    "^": r"\textasciicircum{}",
}
_LATEX_SPECIALS_RE = re.compile("|".join(re.escape(ch) for ch in _LATEX_SPECIALS))


def latex_escape(value: Any) -> str:
    if value is None:
        return ""
    return _LATEX_SPECIALS_RE.sub(lambda m: _LATEX_SPECIALS[m.group()], str(value))


def build_environment(
    template_dir: Optional[Path] = None,
    environment_class: Type[Environment] = Environment,
) -> Environment:
    env = environment_class(
        loader=FileSystemLoader(template_dir) if template_dir is not None else None,
        block_start_string=r"\BLOCK{",
        block_end_string="}",
        variable_start_string=r"\VAR{",
        variable_end_string="}",
        comment_start_string=r"\#{",
        comment_end_string="}",
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
        autoescape=False,
    )
    env.filters["latex"] = latex_escape
    return env


class LatexRenderer:
    """Renders payloads to PDF with Jinja2 + LuaLaTeX."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.template_root = Path(settings.template_dir).resolve()
        if not self.template_root.is_dir():
            raise RuntimeError(f"Template directory does not exist: {self.template_root}")
        self.env = build_environment(self.template_root)
        # Inline sources arrive over the API; they never see Python internals
        self.inline_env = build_environment(environment_class=ImmutableSandboxedEnvironment)

    def render_source(self, payload: RenderPayload) -> str:
        """Render the payload's template to LaTeX source."""
        try:
            if isinstance(payload.template, RegisteredTemplate):
                template = self.env.get_template(payload.template.path)
            elif isinstance(payload.template, InlineTemplate):
                template = self.inline_env.from_string(payload.template.source)
            else:
                raise TemplateRenderError(
                    f"Unsupported template descriptor {payload.template!r}"
                )
            return template.render(payload.render_context())
        except TemplateError as exc:
            raise TemplateRenderError(f"Template rendering failed: {exc}") from exc

    async def render(self, payload: RenderPayload) -> bytes:
        source = self.render_source(payload)
        pdf = await anyio.to_thread.run_sync(self._compile, source)
        logger.info(
            "document_rendered",
            extra={"template_kind": payload.template.kind, "pdf_bytes": len(pdf)},
        )
        return pdf

    # ------------------------------------------------------------------
    # LuaLaTeX invocation (blocking, runs in a worker thread)
    # ------------------------------------------------------------------

    def _compile(self, source: str) -> bytes:
        with tempfile.TemporaryDirectory(prefix="issuance-render-") as tmp:
            outdir = Path(tmp)
            tex_file = outdir / "document.tex"
            tex_file.write_text(source, encoding="utf-8")

            command = [
                "lualatex",
                "-interaction=nonstopmode",
                "-halt-on-error",
                "-no-shell-escape",
                f"-output-directory={outdir}",
                tex_file.name,
            ]

            env_vars: Dict[str, str] = os.environ.copy()
            env_vars["TEXINPUTS"] = (
                f"{self.template_root}{os.pathsep}{env_vars.get('TEXINPUTS', '')}"
            )
            # Paranoid reads: \input cannot reach absolute or parent paths
            env_vars["openin_any"] = "p"

            try:
                process = subprocess.run(
                    command,
                    cwd=outdir,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    timeout=self.settings.render_timeout,
                    env=env_vars,
                    check=False,
                )
            except (OSError, subprocess.SubprocessError) as exc:
                raise TemplateRenderError(f"Failed to invoke LuaLaTeX: {exc}") from exc

            if process.returncode != 0:
                stdout = process.stdout.decode("utf-8", errors="ignore")
                logger.error(
                    "latex_compilation_failed",
                    extra={"returncode": process.returncode, "log_tail": stdout[-2000:]},
                )
                raise TemplateRenderError(
                    f"LuaLaTeX compilation failed (exit {process.returncode})"
                )

            pdf_file = outdir / "document.pdf"
            if not pdf_file.exists():
                raise TemplateRenderError(
                    "LuaLaTeX reported success, but no PDF output was produced."
                )
            return pdf_file.read_bytes()
