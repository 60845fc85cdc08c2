from s3relay.core.paths import (
    GlobalPaths,
    PathContext,
    RoutePaths,
    default_random_id,
    generate_file_key,
    generate_hierarchical_path,
    resolve_user_id,
    sanitize_filename,
)
from s3relay.models.upload import FileDescriptor

FILE = FileDescriptor(name="my photo.png", size=1024, type="image/png")
FIXED = {"timestamp": 1700000000000, "random_id": "abc123def4567"}


class TestFileKey:
    """Test suite for per-file key generation."""

    def test_sanitize_replaces_unsafe_characters(self) -> None:
        assert sanitize_filename("my photo (1).png") == "my_photo__1_.png"
        assert sanitize_filename("../etc/passwd") == ".._etc_passwd", "Slashes must not survive sanitizing"

    def test_generate_file_key_layout(self) -> None:
        key = generate_file_key("a b.png", user_id="u1", **FIXED)
        assert key == "uploads/u1/1700000000000/abc123def4567/a_b.png"

    def test_generate_file_key_is_deterministic(self) -> None:
        assert generate_file_key("x.txt", **FIXED) == generate_file_key("x.txt", **FIXED)

    def test_generate_file_key_optional_parts(self) -> None:
        key = generate_file_key(
            "report.pdf",
            prefix="",
            add_timestamp=False,
            add_random_id=False,
            preserve_extension=False,
            **FIXED,
        )
        assert key == "anonymous/report"

    def test_default_random_id_is_base36(self) -> None:
        token = default_random_id()
        assert len(token) == 13
        assert token.isalnum() and token == token.lower()

    def test_resolve_user_id_priority(self) -> None:
        assert resolve_user_id({"userId": "a", "user": {"id": "b"}}) == "a"
        assert resolve_user_id({"user": {"id": 42}}) == "42"
        assert resolve_user_id({}) == "anonymous"


class TestHierarchicalPath:
    """Test suite for route-aware key derivation."""

    def test_default_layout(self) -> None:
        key = generate_hierarchical_path(FILE, {"userId": "u1"}, "avatar", None, None, **FIXED)
        assert key == "uploads/u1/1700000000000/abc123def4567/my_photo.png"

    def test_route_prefix_and_suffix(self) -> None:
        key = generate_hierarchical_path(
            FILE,
            {},
            "avatar",
            RoutePaths(prefix="avatars/", suffix="original"),
            GlobalPaths(prefix="media"),
            **FIXED,
        )
        assert key == "media/avatars/anonymous/1700000000000/abc123def4567/my_photo.png/original"
        assert "//" not in key, "Repeated separators should be collapsed"

    def test_route_generate_key_is_verbatim(self) -> None:
        seen: list[PathContext] = []

        def generate_key(ctx: PathContext) -> str:
            seen.append(ctx)
            return f"custom//{ctx.route_name}/{ctx.file.name}"

        key = generate_hierarchical_path(
            FILE, {"userId": "u1"}, "avatar", RoutePaths(prefix="ignored", generate_key=generate_key), None, **FIXED
        )
        assert key == "custom//avatar/my photo.png", "Route override must not be post-processed"
        assert seen[0].global_paths.prefix == "uploads"

    def test_global_generate_key_strips_duplicate_prefix(self) -> None:
        global_paths = GlobalPaths(prefix="media", generate_key=lambda file, metadata: f"media/{file.name}")
        key = generate_hierarchical_path(FILE, {}, "docs", RoutePaths(prefix="docs"), global_paths, **FIXED)
        assert key == "media/docs/my photo.png"
