"""Tests for Dockerfile generation."""
import pytest

from forgekit.core.dockerfile import (
    generate_dockerfile,
    has_profile,
    load_profiles,
    materialize_dockerfile,
    primary_stack,
)


class TestProfiles:
    def test_aliases_resolved(self):
        profiles = load_profiles()
        assert "aliases" not in profiles
        assert profiles["react-vite"] == profiles["static-node"]

    @pytest.mark.parametrize("name", ["nextjs", "express", "fastapi", "django", "gofiber", "spring-boot"])
    def test_every_profile_has_required_fields(self, name):
        profile = load_profiles()[name]
        for key in ("base_image", "family", "health_tool", "port", "health_path", "cmd"):
            assert key in profile

    def test_primary_stack(self):
        assert primary_stack("NextJS + Supabase") == "nextjs"
        assert primary_stack("express") == "express"

    def test_has_profile(self):
        assert has_profile("vue-vite")
        assert not has_profile("cobol")
        assert not has_profile(None)


class TestGeneration:
    def test_runs_as_unprivileged_user(self):
        content = generate_dockerfile("express")
        assert "adduser -S -G app" in content
        assert "\nUSER app\n" in content
        assert content.index("chown -R app:app") < content.index("USER app")

    def test_api_health_path(self):
        content = generate_dockerfile("express")
        assert "HEALTHCHECK" in content
        assert "http://127.0.0.1:3000/health" in content
        assert 'CMD ["node", "index.js"]' in content

    def test_static_health_path(self):
        content = generate_dockerfile("react-vite")
        assert "wget -q -O /dev/null http://127.0.0.1:3000/ ||" in content
        assert "RUN npm run build" in content

    def test_debian_image_uses_useradd(self):
        content = generate_dockerfile("fastapi")
        assert "useradd --system" in content
        assert "urllib.request.urlopen" in content

    def test_writable_tmp_and_cache(self):
        content = generate_dockerfile("nextjs")
        assert "TMPDIR=/app/tmp" in content
        assert "ENV NEXT_TELEMETRY_DISABLED=1" in content
        assert "{{" not in content and "{%" not in content

    def test_unknown_stack(self):
        assert generate_dockerfile("cobol") is None


class TestMaterialize:
    def test_writes_when_missing(self, tmp_path):
        path = materialize_dockerfile(tmp_path, "express")
        assert path == tmp_path / "Dockerfile"
        assert path.read_text().startswith("# Generated by ForgeKit CLI for stack: express")

    def test_existing_dockerfile_untouched(self, tmp_path):
        (tmp_path / "Dockerfile").write_text("FROM scratch\n")
        assert materialize_dockerfile(tmp_path, "express") is None
        assert (tmp_path / "Dockerfile").read_text() == "FROM scratch\n"

    def test_unknown_or_missing_stack(self, tmp_path):
        assert materialize_dockerfile(tmp_path, "cobol") is None
        assert materialize_dockerfile(tmp_path, None) is None
        assert not (tmp_path / "Dockerfile").exists()
