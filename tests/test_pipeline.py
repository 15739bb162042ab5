"""Tests for pipeline.py module.

Runs whole builds against a mocked artifact server and a recording sandbox.
"""

import io
import tarfile
from unittest.mock import patch

import httpx
import pytest
import respx

from rstack_build.artifacts.store import RUNTIME_BUILD_ROOTFS, RUNTIME_DEPLOY
from rstack_build.cache.output import ENVIRONMENT, RENV, OutputCache
from rstack_build.config import BuildConfig
from rstack_build.errors import BootstrapError, CacheError, FetchError
from rstack_build.pipeline import (
    artifacts_dir,
    compute_build_key,
    layers_dir,
    run_build,
)
from rstack_build.types import ExecResult, Stack

BASE_URL = "https://artifacts.example.com"


def _tarball(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _tree(root):
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def _layer_members(config, key, family):
    archive = OutputCache(layers_dir(config)).archive_path(family.name, key)
    with tarfile.open(archive) as tar:
        return {name.removeprefix("./") for name in tar.getnames()}


ROOTFS = _tarball({"usr/bin/Rscript": "#!/bin/sh\n"})
DEPLOY = _tarball({"R/bin/R": "#!/bin/sh\n"})


@pytest.fixture
def config(tmp_path):
    return BuildConfig(
        stack=Stack.HEROKU_22,
        release_version="latest",
        runtime_version="4.3.2",
        package_mirror="https://cloud.r-project.org",
        base_url=BASE_URL,
        build_dir=tmp_path / "build",
        app_dir=tmp_path / "app",
        sandbox_dir=tmp_path / "sandbox",
        cache_dir=tmp_path / "cache",
        fetch_backoff=0,
    )


@pytest.fixture
def key(config):
    return compute_build_key(config)


@pytest.fixture
def server(key):
    with respx.mock(assert_all_called=False) as mock:
        rootfs = mock.get(f"{BASE_URL}/{RUNTIME_BUILD_ROOTFS}-{key}.tar.gz").mock(
            return_value=httpx.Response(200, content=ROOTFS)
        )
        deploy = mock.get(f"{BASE_URL}/{RUNTIME_DEPLOY}-{key}.tar.gz").mock(
            return_value=httpx.Response(200, content=DEPLOY)
        )
        yield {"mock": mock, "rootfs": rootfs, "deploy": deploy}


@pytest.fixture
def client():
    with httpx.Client() as c:
        yield c


def _installing_handler(app_dir):
    """Simulate a bootstrap script that installs one package."""

    def handler(command, argv):
        if argv == ("init.R",):
            pkg = app_dir / "R" / "site-library" / "jsonlite"
            pkg.mkdir(parents=True, exist_ok=True)
            (pkg / "DESCRIPTION").write_text("Package: jsonlite\n")
        return None

    return handler


class TestRunBuild:
    """Tests for run_build."""

    def test_happy_path(self, config, key, server, client, fake_sandbox_factory):
        """Should fetch, bootstrap, stage out and persist."""
        config.build_dir.mkdir()
        (config.build_dir / "init.R").write_text("install.packages('jsonlite')")
        sandbox = fake_sandbox_factory(
            config.sandbox_dir, config.app_dir, _installing_handler(config.app_dir)
        )

        summary = run_build(config, client=client, sandbox=sandbox)

        assert summary.fetched == [RUNTIME_BUILD_ROOTFS, RUNTIME_DEPLOY]
        assert summary.strategies == ["plain-init"]
        assert summary.synced is True
        assert summary.persisted == ["environment", "site-library"]
        assert not any(summary.restored.values())

        build = config.build_dir
        assert (build / "R" / "bin" / "R").is_file()
        assert (build / "R" / "site-library" / "jsonlite" / "DESCRIPTION").is_file()
        assert (build / ".profile.d" / "rstack.sh").is_file()
        assert (build / "bin" / "fakechroot").is_file()
        assert "usr/bin/Rscript" in _layer_members(config, key, ENVIRONMENT)

    def test_sandbox_root_removed(self, config, server, client, fake_sandbox_factory):
        """The sandbox root should not outlive the build."""
        run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )

        assert not config.sandbox_dir.exists()

    def test_ephemeral_artifacts_discarded(
        self, config, server, client, fake_sandbox_factory
    ):
        """Should delete downloaded artifacts after a successful build."""
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)

        run_build(config, client=client, sandbox=sandbox)

        assert list(artifacts_dir(config).rglob("*.tar.gz")) == []

    def test_keep_artifacts(self, config, server, client, fake_sandbox_factory):
        """Test mode should leave downloaded artifacts and the sandbox in place."""
        config = config.model_copy(update={"keep_artifacts": True})
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)

        run_build(config, client=client, sandbox=sandbox)

        kept = sorted(p.name for p in artifacts_dir(config).rglob("*.tar.gz"))
        assert len(kept) == 2
        assert (config.sandbox_dir / "usr" / "bin" / "Rscript").is_file()

    def test_environment_hit_skips_rootfs_fetch(
        self, config, server, client, fake_sandbox_factory
    ):
        """A cached environment layer should replace the rootfs download."""
        run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )

        config = config.model_copy(update={"keep_artifacts": True})
        summary = run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )

        assert summary.restored["environment"] is True
        assert summary.fetched == [RUNTIME_DEPLOY]
        assert server["rootfs"].call_count == 1
        assert server["deploy"].call_count == 2
        assert (config.sandbox_dir / "usr" / "bin" / "Rscript").is_file()

    def test_environment_not_shared_across_keys(
        self, config, server, client, fake_sandbox_factory
    ):
        """A previous key's rootfs must not leak into the next key's layer."""
        stack_18 = config.model_copy(
            update={"stack": Stack.HEROKU_18, "runtime_version": "4.0.5"}
        )
        key_18 = compute_build_key(stack_18)
        server["mock"].get(f"{BASE_URL}/{RUNTIME_BUILD_ROOTFS}-{key_18}.tar.gz").mock(
            return_value=httpx.Response(
                200, content=_tarball({"etc/only-in-18": "bionic"})
            )
        )
        server["mock"].get(f"{BASE_URL}/{RUNTIME_DEPLOY}-{key_18}.tar.gz").mock(
            return_value=httpx.Response(200, content=DEPLOY)
        )

        run_build(
            stack_18,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )
        run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )

        members = _layer_members(config, compute_build_key(config), ENVIRONMENT)
        assert "usr/bin/Rscript" in members
        assert "etc/only-in-18" not in members

    def test_reserved_app_entries_untouched(
        self, config, server, client, fake_sandbox_factory
    ):
        """Platform entries in app_dir survive the build byte-for-byte."""
        app = config.app_dir
        (app / "bin").mkdir(parents=True)
        (app / "bin" / "platform-tool").write_text("#!/bin/sh\necho platform\n")
        (app / ".profile.d").mkdir()
        (app / ".profile.d" / "platform.sh").write_text("export PLATFORM=1\n")
        before = _tree(app)
        config.build_dir.mkdir()
        (config.build_dir / "init.R").write_text("install.packages('jsonlite')")
        sandbox = fake_sandbox_factory(
            config.sandbox_dir, app, _installing_handler(app)
        )

        run_build(config, client=client, sandbox=sandbox)

        assert _tree(app) == before
        assert sorted(p.name for p in app.iterdir()) == [".profile.d", "bin"]
        build = config.build_dir
        assert sorted(p.name for p in (build / "bin").iterdir()) == [
            "fakechroot",
            "fakeroot",
        ]
        assert (build / ".profile.d" / "rstack.sh").is_file()
        assert not (build / ".profile.d" / "platform.sh").exists()
        assert (build / "R" / "site-library" / "jsonlite" / "DESCRIPTION").is_file()

    def test_second_build_stages_fresh_tree(
        self, config, server, client, fake_sandbox_factory
    ):
        """Entries staged by one build must not become reserved in the next."""
        config.build_dir.mkdir()
        (config.build_dir / "init.R").write_text("first")
        run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )
        assert list(config.app_dir.iterdir()) == []

        (config.build_dir / "init.R").write_text("second")
        seen = []

        def handler(command, argv):
            if argv == ("init.R",):
                seen.append((config.app_dir / "init.R").read_text())
            return None

        run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir, handler),
        )

        assert seen == ["second"]

    def test_families_restored_independently(
        self, config, key, server, client, fake_sandbox_factory, tmp_path
    ):
        """A hit in one family should not imply hits in the others."""
        seed = tmp_path / "seed"
        (seed / "renv" / "library" / "R-4.3").mkdir(parents=True)
        (seed / "renv" / "library" / "R-4.3" / "marker").write_text("cached")
        OutputCache(layers_dir(config)).persist_family(RENV, key, seed)

        summary = run_build(
            config,
            client=client,
            sandbox=fake_sandbox_factory(config.sandbox_dir, config.app_dir),
        )

        assert summary.restored == {
            "environment": False,
            "site-library": False,
            "packrat": False,
            "renv": True,
        }
        marker = config.build_dir / "renv" / "library" / "R-4.3" / "marker"
        assert marker.read_text() == "cached"

    def test_no_markers_still_persists(
        self, config, server, client, fake_sandbox_factory
    ):
        """A build with nothing to bootstrap should still reach persistence."""
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)

        summary = run_build(config, client=client, sandbox=sandbox)

        assert summary.strategies == []
        assert sandbox.calls == []
        assert "environment" in summary.persisted

    def test_bootstrap_failure_writes_no_cache(
        self, config, server, client, fake_sandbox_factory
    ):
        """A failed strategy should leave the cache untouched and clean up."""
        config.build_dir.mkdir()
        (config.build_dir / "init.R").write_text("stop('boom')")

        def handler(command, argv):
            return ExecResult(1, "Error: boom", command)

        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir, handler)

        with pytest.raises(BootstrapError) as exc_info:
            run_build(config, client=client, sandbox=sandbox)

        assert "boom" in exc_info.value.output
        assert OutputCache(layers_dir(config)).list_keys() == []
        assert not config.sandbox_dir.exists()
        assert list(config.app_dir.iterdir()) == []

    def test_fetch_failure_is_fatal(self, config, key, client, fake_sandbox_factory):
        """A missing artifact should abort before any bootstrap step."""
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)
        with respx.mock:
            respx.get(f"{BASE_URL}/{RUNTIME_BUILD_ROOTFS}-{key}.tar.gz").mock(
                return_value=httpx.Response(404)
            )
            with pytest.raises(FetchError) as exc_info:
                run_build(config, client=client, sandbox=sandbox)

        assert exc_info.value.code == "http_client_error"
        assert sandbox.calls == []
        assert OutputCache(layers_dir(config)).list_keys() == []

    def test_persist_failure_is_categorized(
        self, config, server, client, fake_sandbox_factory
    ):
        """Archive errors while persisting should surface as CacheError."""
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)

        with patch.object(tarfile.TarFile, "add", side_effect=OSError("disk full")):
            with pytest.raises(CacheError) as exc_info:
                run_build(config, client=client, sandbox=sandbox)

        assert exc_info.value.code == "persist_error"
        assert not config.sandbox_dir.exists()

    def test_deprecated_aptfile_warns(
        self, config, server, client, fake_sandbox_factory
    ):
        """Packages from the deprecated location should install with a warning."""
        (config.build_dir / ".rstack").mkdir(parents=True)
        (config.build_dir / ".rstack" / "Aptfile").write_text("libgdal-dev\n")
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)

        summary = run_build(config, client=client, sandbox=sandbox)

        assert len(summary.warnings) == 1
        assert ".rstack/Aptfile" in summary.warnings[0]
        assert sandbox.calls == [("apt-get", ("libgdal-dev",), True)]

    def test_same_directory_skips_sync(
        self, config, server, client, fake_sandbox_factory
    ):
        """Building directly in the app directory should not stage."""
        config = config.model_copy(update={"build_dir": config.app_dir})
        sandbox = fake_sandbox_factory(config.sandbox_dir, config.app_dir)

        summary = run_build(config, client=client, sandbox=sandbox)

        assert summary.synced is False
        assert (config.app_dir / "R" / "bin" / "R").is_file()
        assert (config.app_dir / "bin" / "fakeroot").is_file()


class TestComputeBuildKey:
    """Tests for compute_build_key."""

    def test_format(self, config):
        """Should produce release-stack-fingerprint."""
        key = compute_build_key(config)
        release, stack, fingerprint = key.split("-")
        assert (release, stack) == ("latest", "22")
        assert len(fingerprint) == 12

    def test_runtime_version_changes_key(self, config):
        """Should change when the runtime version changes."""
        other = config.model_copy(update={"runtime_version": "4.2.3"})
        assert compute_build_key(config) != compute_build_key(other)

    def test_pin_file_changes_key(self, config, tmp_path):
        """Should fingerprint the pin file's content."""
        pin = tmp_path / "renv.lock"
        pin.write_text('{"R": {"Version": "4.3.2"}}')
        first = compute_build_key(config.model_copy(update={"pin_file": pin}))
        pin.write_text('{"R": {"Version": "4.3.3"}}')
        second = compute_build_key(config.model_copy(update={"pin_file": pin}))
        assert first != second
