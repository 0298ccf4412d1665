import glob
import importlib.util
import os

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect
from sqlmodel import SQLModel

import models  # noqa: F401  registers the tables on SQLModel.metadata

VERSIONS = os.path.join(os.path.dirname(__file__), "..", "alembic", "versions")


def load_revision():
    # load the revision module by path; alembic/versions is not a package
    [path] = glob.glob(os.path.join(VERSIONS, "*_pool_schema.py"))
    spec = importlib.util.spec_from_file_location("pool_schema", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def run(engine, step):
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            step()


def test_revision_matches_models(tmp_path):
    revision = load_revision()
    engine = create_engine(f"sqlite:///{tmp_path}/migrate.db")
    run(engine, revision.upgrade)
    inspector = inspect(engine)
    assert set(inspector.get_table_names()) == set(SQLModel.metadata.tables)
    for name, table in SQLModel.metadata.tables.items():
        migrated = {c["name"] for c in inspector.get_columns(name)}
        assert migrated == {c.name for c in table.columns}, name
    run(engine, revision.downgrade)
    assert inspect(engine).get_table_names() == []
    engine.dispose()
