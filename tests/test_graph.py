import random
from pathlib import Path

import pytest

from codegen_pipeline.errors import (
    CircularDependencyError,
    ManifestValidationError,
    ResponseParsingError,
    UnresolvedDependencyError,
)
from codegen_pipeline.graph import (
    build_dependency_graph,
    concurrency_layers,
    detect_cycles,
    materialize_files,
    plan_generation,
    resolve_dependency,
    topological_order,
)
from codegen_pipeline.manifest import VirtualDirectory


DIAMOND = {"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}


def test_resolve_dependency_relative_and_directory_tokens() -> None:
    assert resolve_dependency("src/pages/Home/index.tsx", "../../components/Header.tsx") == "src/components/Header.tsx"
    assert resolve_dependency("src/App.tsx", "./utils") == "src/utils/index.ts"
    assert resolve_dependency("src/App.tsx", "hooks", index_file="index.tsx") == "src/hooks/index.tsx"


def test_build_dependency_graph_resolves_tokens_relative_to_importer() -> None:
    graph = build_dependency_graph(
        {
            "files": {
                "src/App.tsx": {"dependsOn": ["./pages/Home.tsx", "./components/Nav.tsx"]},
                "src/pages/Home.tsx": {"dependsOn": ["utils.ts"]},
                "utils.ts": {"dependsOn": []},
            }
        }
    )
    assert graph.dependencies["src/App.tsx"] == ("src/pages/Home.tsx", "src/components/Nav.tsx")
    assert graph.dependencies["src/pages/Home.tsx"] == ("src/pages/utils.ts",)
    assert graph.nodes == {
        "src/App.tsx",
        "src/pages/Home.tsx",
        "src/components/Nav.tsx",
        "src/pages/utils.ts",
        "utils.ts",
    }
    assert ("src/pages/Home.tsx", "src/App.tsx") in graph.edges()


def test_declared_bare_names_are_used_verbatim() -> None:
    graph = build_dependency_graph({"files": {"x": {"dependsOn": ["y"]}, "y": {"dependsOn": []}}})
    assert graph.dependencies == {"x": ("y",), "y": ()}


def test_framework_paths_are_not_graph_members() -> None:
    graph = build_dependency_graph(
        {"files": {"src/App.tsx": {"dependsOn": ["@/components/ui/button.tsx", "src/components/ui/card.tsx"]}}}
    )
    assert graph.nodes == {"src/App.tsx"}


def test_relative_framework_imports_and_keys_are_not_graph_members() -> None:
    graph = build_dependency_graph(
        {
            "files": {
                "src/pages/Home.tsx": {"dependsOn": ["../components/ui/button.tsx", "./Card.tsx"]},
                "src/components/ui/dialog.tsx": {"dependsOn": []},
            }
        }
    )
    assert graph.nodes == {"src/pages/Home.tsx", "src/pages/Card.tsx"}


def test_materialize_files_leaves_framework_components_untouched(tmp_path: Path) -> None:
    button = tmp_path / "src/components/ui/button.tsx"
    button.parent.mkdir(parents=True)
    button.write_text("export const Button = () => null;", encoding="utf-8")
    payload = {"files": {"src/pages/Home.tsx": {"dependsOn": ["../components/ui/button.tsx"]}}}

    created = materialize_files(payload, tmp_path, VirtualDirectory(["src/pages/Home.tsx"]))

    assert [path.name for path in created] == ["Home.tsx"]
    assert button.read_text(encoding="utf-8") == "export const Button = () => null;"


@pytest.mark.parametrize("bad", ["src/my file.ts", "src//double.ts", "src/dir/"])
def test_build_dependency_graph_rejects_malformed_paths(bad: str) -> None:
    with pytest.raises(ResponseParsingError):
        build_dependency_graph({"files": {"src/App.tsx": {"dependsOn": [bad]}}})


def test_build_dependency_graph_rejects_invalid_payload() -> None:
    with pytest.raises(ResponseParsingError):
        build_dependency_graph({"files": ["not", "a", "mapping"]})


def test_two_node_cycle_is_rejected() -> None:
    graph = build_dependency_graph({"files": {"x": {"dependsOn": ["y"]}, "y": {"dependsOn": ["x"]}}})
    with pytest.raises(CircularDependencyError) as excinfo:
        detect_cycles(graph)
    assert {"x", "y"} <= set(excinfo.value.cycle)
    with pytest.raises(CircularDependencyError):
        topological_order(graph)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CircularDependencyError):
        build_dependency_graph({"files": {"src/a.ts": {"dependsOn": ["./a.ts"]}}})


def test_concurrency_layers_diamond() -> None:
    assert concurrency_layers(DIAMOND) == [["a"], ["b", "c"], ["d"]]


def test_concurrency_layers_are_stable_across_insertion_orders() -> None:
    expected = [set(layer) for layer in concurrency_layers(DIAMOND)]
    items = list(DIAMOND.items())
    for seed in range(10):
        random.Random(seed).shuffle(items)
        shuffled = {node: list(reversed(deps)) for node, deps in items}
        assert [set(layer) for layer in concurrency_layers(shuffled)] == expected


def test_layer_members_depend_only_on_earlier_layers() -> None:
    layers = concurrency_layers(DIAMOND)
    seen: set[str] = set()
    for layer in layers:
        for node in layer:
            assert set(DIAMOND.get(node, [])) <= seen
        seen.update(layer)


def test_concurrency_layers_reject_leftover_nodes() -> None:
    with pytest.raises(UnresolvedDependencyError) as excinfo:
        concurrency_layers({"x": ["y"], "y": ["x"], "z": []})
    assert excinfo.value.unresolved == ["x", "y"]
    assert excinfo.value.retryable


def test_topological_order_puts_dependencies_first() -> None:
    order = topological_order(DIAMOND)
    for node, deps in DIAMOND.items():
        for dep in deps:
            assert order.index(dep) < order.index(node)


def test_plan_generation_rejects_undeclared_paths(tmp_path: Path) -> None:
    payload = {"files": {"src/App.tsx": {"dependsOn": ["./components/Missing.tsx"]}}}
    manifest = VirtualDirectory(["src/App.tsx"])
    with pytest.raises(ManifestValidationError) as excinfo:
        plan_generation(payload, manifest)
    assert excinfo.value.missing == ["src/components/Missing.tsx"]

    with pytest.raises(ManifestValidationError):
        materialize_files(payload, tmp_path, manifest)
    assert list(tmp_path.iterdir()) == []


def test_cycle_aborts_before_any_file_is_written(tmp_path: Path) -> None:
    payload = {
        "files": {
            "src/a.ts": {"dependsOn": ["./b.ts"]},
            "src/b.ts": {"dependsOn": ["./a.ts"]},
            "src/c.ts": {"dependsOn": []},
        }
    }
    manifest = VirtualDirectory(["src/a.ts", "src/b.ts", "src/c.ts"])
    with pytest.raises(CircularDependencyError):
        materialize_files(payload, tmp_path, manifest)
    assert list(tmp_path.rglob("*")) == []


def test_materialize_files_creates_placeholders_in_order(tmp_path: Path) -> None:
    payload = {
        "files": {
            "src/App.tsx": {"dependsOn": ["./components/Header.tsx", "@/components/ui/button.tsx"]},
            "src/components/Header.tsx": {"dependsOn": []},
        }
    }
    manifest = VirtualDirectory(["src/App.tsx", "src/components/Header.tsx"])
    created = materialize_files(payload, tmp_path, manifest)
    relative = [path.relative_to(tmp_path.resolve()).as_posix() for path in created]
    assert relative == ["src/components/Header.tsx", "src/App.tsx"]
    assert (tmp_path / "src/App.tsx").read_text(encoding="utf-8") == "// Generated file: App.tsx"
