"""Tests for link planning and node_modules materialization."""

import json
import os

import pytest

from common.errors import LinkConflict
from install import linker
from install.acquire import AcquisitionPipeline
from resolver.resolver import Resolver
from versioning.models import Requirement


def _resolve(client, **deps):
    reqs = [Requirement(n, r) for n, r in sorted(deps.items())]
    return Resolver(client, max_workers=2, os_name="linux", cpu="x64").resolve(reqs)


def _layout(link_plan):
    return {"/".join(path): node.version for path, node in link_plan.placements.items()}


class TestPlan:
    """Test placement planning."""

    def test_flat_when_no_conflicts(self, registry, client):
        """Test packages go to the top level without conflicts."""
        registry.add("a", "1.0.0", dependencies={"b": "^1"})
        registry.add("b", "1.0.0")
        assert _layout(linker.plan(_resolve(client, a="^1"))) == {"a": "1.0.0", "b": "1.0.0"}

    def test_conflict_is_nested_under_consumer(self, registry, client):
        """Test a conflicting version nests under its consumer."""
        registry.add("a", "1.0.0", dependencies={"b": "^2"})
        registry.add("b", "1.0.0")
        registry.add("b", "2.0.0")
        link_plan = linker.plan(_resolve(client, a="^1", b="^1"))
        assert _layout(link_plan) == {"a": "1.0.0", "b": "1.0.0", "a/b": "2.0.0"}
        assert link_plan.to_dict() == {
            os.path.join("node_modules", "a"): "a@1.0.0",
            os.path.join("node_modules", "b"): "b@1.0.0",
            os.path.join("node_modules", "a", "node_modules", "b"): "b@2.0.0",
        }

    def test_nesting_never_shadows_recorded_lookup(self, registry, client):
        """Test placement never changes an earlier lookup."""
        registry.add("p", "1.0.0", dependencies={"q": "^1", "r": "^2"})
        registry.add("q", "1.0.0")
        registry.add("q", "2.0.0")
        registry.add("r", "1.0.0")
        registry.add("r", "2.0.0", dependencies={"q": "^2"})
        link_plan = linker.plan(_resolve(client, p="^1", q="^1", r="^1"))
        assert _layout(link_plan) == {
            "p": "1.0.0",
            "q": "1.0.0",
            "r": "1.0.0",
            "p/r": "2.0.0",
            "p/r/q": "2.0.0",
        }

    def test_every_consumer_finds_its_version(self, registry, client):
        """Test every consumer resolves its own version by walking up."""
        registry.add("p", "1.0.0", dependencies={"q": "^1", "r": "^2"})
        registry.add("q", "1.0.0")
        registry.add("q", "2.0.0")
        registry.add("r", "1.0.0")
        registry.add("r", "2.0.0", dependencies={"q": "^2"})
        graph = _resolve(client, p="^1", q="^1", r="^1")
        link_plan = linker.plan(graph)
        for path, node in link_plan.placements.items():
            for req, child in graph.children(node.key):
                found = None
                for depth in range(len(path), -1, -1):
                    found = link_plan.node_at(path[:depth] + (req.name,))
                    if found is not None:
                        break
                assert found is child, f"{'/'.join(path)} -> {req.name}"

    def test_cycle_is_planned_once(self, registry, client):
        """Test a dependency cycle is placed once."""
        registry.add("a", "1.0.0", dependencies={"b": "^1"})
        registry.add("b", "1.0.0", dependencies={"a": "^1"})
        assert _layout(linker.plan(_resolve(client, a="^1"))) == {"a": "1.0.0", "b": "1.0.0"}

    def test_scoped_paths(self):
        """Test scoped packages get scoped paths."""
        assert linker.relative_dir(("@s/x", "y")) == os.path.join(
            "node_modules", "@s", "x", "node_modules", "y"
        )
        assert linker.relative_dir(()) == ""


@pytest.fixture
def installed(registry, client, cache, tmp_path):
    """Resolve, acquire and link; returns a callable re-running apply."""
    def _run(**deps):
        graph = _resolve(client, **deps)
        acquired = AcquisitionPipeline(client, cache, 2).acquire_all(list(graph))
        trees = {k: p.tree_path for k, p in acquired.packages.items()}
        link_plan = linker.plan(graph)
        return link_plan, linker.apply(link_plan, trees, str(tmp_path / "proj"))
    return _run


class TestApply:
    """Test materializing a plan on disk."""

    def test_materializes_tree(self, registry, installed, tmp_path):
        """Test files are copied into place with a marker."""
        registry.add("a", "1.0.0", dependencies={"b": "^2"})
        registry.add("b", "1.0.0")
        registry.add("b", "2.0.0")
        _, result = installed(a="^1", b="^1")
        modules = tmp_path / "proj" / "node_modules"
        assert json.loads((modules / "b" / "package.json").read_text())["version"] == "1.0.0"
        nested = modules / "a" / "node_modules" / "b" / "package.json"
        assert json.loads(nested.read_text())["version"] == "2.0.0"
        assert result.linked == 3
        marker = json.loads((modules / "a" / ".voltpm-integrity").read_text())
        assert marker["package"] == "a@1.0.0"

    def test_reapply_is_noop(self, registry, installed):
        """Test reapplying the same plan changes nothing."""
        registry.add("a", "1.0.0")
        installed(a="^1")
        _, second = installed(a="^1")
        assert (second.linked, second.unchanged, second.removed) == (0, 1, 0)

    def test_changed_version_is_relinked(self, registry, installed, tmp_path):
        """Test a new version replaces the old directory."""
        registry.add("a", "1.0.0")
        registry.add("a", "2.0.0")
        installed(a="^1")
        _, result = installed(a="^2")
        assert result.linked == 1
        data = json.loads((tmp_path / "proj" / "node_modules" / "a" / "package.json").read_text())
        assert data["version"] == "2.0.0"

    def test_extraneous_packages_removed(self, registry, installed, tmp_path):
        """Test installed packages missing from the plan are removed."""
        registry.add("a", "1.0.0")
        registry.add("b", "1.0.0")
        installed(a="^1", b="^1")
        unmanaged = tmp_path / "proj" / "node_modules" / "handmade"
        unmanaged.mkdir()
        _, result = installed(a="^1")
        assert result.removed == 1
        assert not (tmp_path / "proj" / "node_modules" / "b").exists()
        assert unmanaged.exists()

    def test_scoped_package(self, registry, installed, tmp_path):
        """Test scoped packages are written under their scope."""
        registry.add("@s/x", "1.0.0")
        installed(**{"@s/x": "^1"})
        assert (tmp_path / "proj" / "node_modules" / "@s" / "x" / "package.json").is_file()

    def test_bin_links(self, registry, installed, tmp_path):
        """Test bin commands are linked into .bin."""
        registry.add("tool", "1.0.0", bin_map={"tool": "bin/tool.js"}, files={"bin/tool.js": "#!/usr/bin/env node\n"})
        _, result = installed(tool="^1")
        link = tmp_path / "proj" / "node_modules" / ".bin" / "tool"
        assert result.bins == 1
        assert os.path.islink(link)
        assert os.readlink(link) == os.path.join("..", "tool", "bin", "tool.js")
        assert os.access(link, os.X_OK)

    def test_missing_tree_is_conflict(self, registry, client, tmp_path):
        """Test a missing extracted tree raises LinkConflict."""
        registry.add("a", "1.0.0")
        link_plan = linker.plan(_resolve(client, a="^1"))
        with pytest.raises(LinkConflict):
            linker.apply(link_plan, {}, str(tmp_path / "proj"))

    def test_hardlink_mode(self, registry, client, cache, tmp_path):
        """Test hardlink mode links cache files."""
        registry.add("a", "1.0.0")
        graph = _resolve(client, a="^1")
        acquired = AcquisitionPipeline(client, cache, 1).acquire_all(list(graph))
        trees = {k: p.tree_path for k, p in acquired.packages.items()}
        linker.apply(linker.plan(graph), trees, str(tmp_path / "proj"), link_mode="hardlink")
        installed_file = tmp_path / "proj" / "node_modules" / "a" / "index.js"
        cached_file = os.path.join(trees[("a", "1.0.0")], "index.js")
        assert os.path.samefile(installed_file, cached_file)
