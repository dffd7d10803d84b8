from .backend import BackendCodeHandler, BackendFileReviewHandler, BackendRequirementsHandler
from .base import BuildHandler
from .code_generate import CodeGenerationHandler
from .database import SchemaValidationHandler
from .documents import (
    DatabaseRequirementsHandler,
    DatabaseSchemaHandler,
    DocumentGenerationHandler,
    ProductRequirementsHandler,
)
from .file_manager import FileArchitectureHandler, FileGenerateHandler, FileStructureHandler
from .project_init import ProjectInitHandler


def builtin_handlers() -> list[BuildHandler]:
    return [
        ProjectInitHandler(),
        ProductRequirementsHandler(),
        FileStructureHandler(),
        DatabaseRequirementsHandler(),
        DatabaseSchemaHandler(),
        SchemaValidationHandler(),
        FileArchitectureHandler(),
        FileGenerateHandler(),
        CodeGenerationHandler(),
        BackendRequirementsHandler(),
        BackendCodeHandler(),
        BackendFileReviewHandler(),
    ]


__all__ = [
    "BackendCodeHandler",
    "BackendFileReviewHandler",
    "BackendRequirementsHandler",
    "BuildHandler",
    "CodeGenerationHandler",
    "DatabaseRequirementsHandler",
    "DatabaseSchemaHandler",
    "DocumentGenerationHandler",
    "FileArchitectureHandler",
    "FileGenerateHandler",
    "FileStructureHandler",
    "ProductRequirementsHandler",
    "ProjectInitHandler",
    "SchemaValidationHandler",
    "builtin_handlers",
]
