from __future__ import annotations

from .handlers import (
    BackendCodeHandler,
    BackendFileReviewHandler,
    BackendRequirementsHandler,
    CodeGenerationHandler,
    DatabaseRequirementsHandler,
    DatabaseSchemaHandler,
    FileArchitectureHandler,
    FileStructureHandler,
    ProductRequirementsHandler,
    ProjectInitHandler,
    SchemaValidationHandler,
)
from .models import BuildNode, BuildSequence, BuildStep


def default_sequence(
    *,
    project_name: str,
    description: str = "",
    database_type: str | None = None,
    model: str | None = None,
) -> BuildSequence:
    """Canonical staged fullstack pipeline.

    Setup and product requirements run first. The frontend branch goes structure,
    architecture, code; the backend branch goes database requirements, schema,
    schema check, backend requirements and code, then a review of the backend files.
    """
    setup = ProjectInitHandler.id
    prd = ProductRequirementsHandler.id
    structure = FileStructureHandler.id
    db_requirements = DatabaseRequirementsHandler.id
    schema = DatabaseSchemaHandler.id
    schema_check = SchemaValidationHandler.id
    architecture = FileArchitectureHandler.id
    backend_requirements = BackendRequirementsHandler.id
    backend_code = BackendCodeHandler.id
    return BuildSequence(
        id="seq:fullstack",
        version="1.0",
        name=project_name,
        description=description,
        database_type=database_type,
        model=model,
        steps=(
            BuildStep(id="step-setup", name="Project setup", nodes=(BuildNode(id=setup),)),
            BuildStep(
                id="step-requirements",
                name="Product requirements",
                nodes=(BuildNode(id=prd, requires=(setup,)),),
            ),
            BuildStep(
                id="step-structure",
                name="File structure and database requirements",
                parallel=True,
                nodes=(
                    BuildNode(id=structure, requires=(prd,)),
                    BuildNode(id=db_requirements, requires=(prd,)),
                ),
            ),
            BuildStep(
                id="step-architecture",
                name="File architecture, database schema and backend requirements",
                parallel=True,
                nodes=(
                    BuildNode(id=architecture, requires=(structure,)),
                    BuildNode(id=schema, requires=(db_requirements,)),
                    BuildNode(id=backend_requirements, requires=(db_requirements,)),
                ),
            ),
            BuildStep(
                id="step-schema-check",
                name="Database schema check",
                nodes=(BuildNode(id=schema_check, requires=(schema,)),),
            ),
            BuildStep(
                id="step-code",
                name="Frontend and backend code generation",
                parallel=True,
                nodes=(
                    BuildNode(id=CodeGenerationHandler.id, requires=(architecture, prd)),
                    BuildNode(id=backend_code, requires=(schema_check, backend_requirements)),
                ),
            ),
            BuildStep(
                id="step-review",
                name="Backend file review",
                nodes=(BuildNode(id=BackendFileReviewHandler.id, requires=(backend_code,)),),
            ),
        ),
    )
