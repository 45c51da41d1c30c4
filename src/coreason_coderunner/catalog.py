# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from loguru import logger

from coreason_coderunner.exceptions import UnsupportedLanguage
from coreason_coderunner.models import ImageSpec

DEFAULT_IMAGE_SPECS: tuple[ImageSpec, ...] = (
    ImageSpec(
        language_id="c",
        image="coderunner-c:latest",
        source_file="code.c",
        compile_command=("gcc", "{source}", "-o", "program", "-std=c11"),
        run_command=("./program",),
    ),
    ImageSpec(
        language_id="cpp",
        image="coderunner-cpp:latest",
        source_file="code.cpp",
        compile_command=("g++", "{source}", "-o", "program", "-std=c++17"),
        run_command=("./program",),
    ),
    ImageSpec(
        language_id="java",
        image="coderunner-java:latest",
        source_file="Main.java",
        compile_command=("javac", "{source}"),
        run_command=("java", "{main}"),
        stderr_noise=("Picked up JAVA_TOOL_OPTIONS",),
        entry_point_pattern=r"public\s+(?:final\s+|abstract\s+)*class\s+(\w+)",
    ),
    ImageSpec(
        language_id="python",
        image="coderunner-python:latest",
        source_file="code.py",
        run_command=("python3", "{source}"),
    ),
)


class ImageCatalog:
    """Read-only mapping of language id to the image that runs it.

    Loaded once; there is no way to add or change entries afterwards.
    """

    def __init__(
        self,
        specs: Iterable[ImageSpec] = DEFAULT_IMAGE_SPECS,
        image_overrides: Mapping[str, str] | None = None,
    ):
        table: dict[str, ImageSpec] = {}
        for spec in specs:
            if spec.language_id in table:
                raise ValueError(f"Duplicate image spec for language {spec.language_id}")
            table[spec.language_id] = spec

        for language_id, image in (image_overrides or {}).items():
            if language_id not in table:
                raise ValueError(f"Image override for unknown language: {language_id}")
            logger.debug(f"Overriding image for {language_id}: {image}")
            table[language_id] = table[language_id].model_copy(update={"image": image})

        self._specs: Mapping[str, ImageSpec] = MappingProxyType(table)

    def resolve(self, language_id: str) -> ImageSpec:
        """Return the ImageSpec for a language.

        Raises:
            UnsupportedLanguage: If the catalog has no entry for the language.
        """
        try:
            return self._specs[language_id]
        except KeyError:
            raise UnsupportedLanguage(language_id) from None

    def languages(self) -> list[str]:
        return sorted(self._specs)

    def __contains__(self, language_id: object) -> bool:
        return language_id in self._specs

    def __len__(self) -> int:
        return len(self._specs)
