"""CLI interface with subcommand routing over sessions, scenes and renders."""

import argparse
import asyncio
import logging
import shutil
import sys

from scene_narrator.artifacts import SessionStore
from scene_narrator.assembly import export_narration
from scene_narrator.constants import OUTPUT_DIR, VERSION
from scene_narrator.editor import Notice, ScriptEditor, SegmentUpdated
from scene_narrator.errors import ContentValidationFailed, ScriptEditorError
from scene_narrator.lifecycle import effective_params
from scene_narrator.models import RENDERED
from scene_narrator.parser import strip_tags
from scene_narrator.pipeline import ingest_scene
from scene_narrator.service import ScriptService
from scene_narrator.validator import validate_scene_content
from scene_narrator.voices import VOICE_POOL

ON_OFF = ("on", "off")


def _check_ffmpeg():
    """Verify ffmpeg is installed."""
    if not shutil.which("ffmpeg"):
        print("Error: ffmpeg is required but not found.", file=sys.stderr)
        print("Install with: brew install ffmpeg", file=sys.stderr)
        raise SystemExit(1)


def _store() -> SessionStore:
    return SessionStore(output_base=OUTPUT_DIR)


def _service() -> ScriptService:
    return ScriptService(_store())


def _read_text(path: str) -> str:
    try:
        with open(path) as f:
            return f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {path}", file=sys.stderr)
        raise SystemExit(1)


def _print_issues(error: ContentValidationFailed) -> None:
    print("Content validation failed:", file=sys.stderr)
    for issue in error.issues:
        print(f"  - {issue}", file=sys.stderr)
    if error.content_preview:
        print(f"Preview: {error.content_preview}", file=sys.stderr)


def cmd_validate(args):
    """Check a scene file without saving it."""
    raw = _read_text(args.file)
    try:
        result = validate_scene_content(raw, strip_tags(raw), multi_voice=not args.single_voice)
    except ContentValidationFailed as e:
        _print_issues(e)
        raise SystemExit(1)
    print(f"OK: {result.word_count} words, {result.char_count} chars")


def cmd_new(args):
    """Add a scene from a text file to a session, creating the session if needed."""
    raw = _read_text(args.file)
    store = _store()
    if not store.exists(args.session):
        store.init_session(args.session)
        print(f"Created session: {store.session_dir(args.session)}")

    try:
        scene = ingest_scene(store, args.session, raw, skip_validation=args.force)
    except ContentValidationFailed as e:
        _print_issues(e)
        print("Nothing saved. Use --force to save anyway.", file=sys.stderr)
        raise SystemExit(1)

    dialogue = sum(1 for s in scene.dialogue_map if s.type == "dialogue")
    print(f"Saved scene {scene.sequence_index} ({scene.id})")
    print(f"  Mood: {scene.mood}, {scene.word_count} words")
    print(f"  Segments: {len(scene.dialogue_map)} ({len(scene.dialogue_map) - dialogue} narrator, {dialogue} dialogue)")
    if scene.validation_bypassed:
        print("  Warning: validation was bypassed")


def cmd_status(args):
    """Show session status."""
    store = _store()
    script = store.load_script(args.session)
    status = store.session_status(args.session)

    print(f"Session: {args.session}")
    print(f"Scenes: {status['scenes']}  Segments: {status['segments']}  Chars used: {status['chars_used']}")

    if script.characters:
        print("Cast:")
        for c in script.characters:
            print(f"  {c.name:<15} → {c.voice_id or 'unset'}")

    for scene in script.scenes:
        flag = " (validation bypassed)" if scene.validation_bypassed else ""
        print(f"Scene {scene.sequence_index} [{scene.mood}]{flag}")
        for seg in scene.dialogue_map:
            params = effective_params(seg)
            marker = "[done]" if seg.render_status == RENDERED else f"[{seg.render_status[:4]}]"
            print(f"  {marker} {seg.id} {seg.speaker:<12} {params.emotion:<10} {seg.text[:50]}")


def _parse_override_values(values: list[str]) -> dict:
    changes = {}
    for item in values:
        if "=" not in item:
            print(f"Error: Expected field=value, got: {item}", file=sys.stderr)
            raise SystemExit(1)
        key, value = item.split("=", 1)
        if key in ("stability", "style"):
            try:
                changes[key] = float(value)
            except ValueError:
                print(f"Error: Invalid value for {key}: {value}", file=sys.stderr)
                raise SystemExit(1)
        else:
            changes[key] = value
    return changes


def _require_on_off(key: str, values: list[str]) -> bool:
    if not values or values[0] not in ON_OFF:
        print(f"Error: 'set {key}' requires 'on' or 'off'", file=sys.stderr)
        raise SystemExit(1)
    return values[0] == "on"


def cmd_set(args):
    """Update session settings, segment overrides or character voices."""
    service = _service()
    service.store.require(args.session)
    key = args.key
    values = args.values

    valid_keys = {"override", "voice", "narrator-voice", "multi-voice", "hide-speech-tags"}
    if key not in valid_keys:
        print(f"Error: Invalid setting key: {key}", file=sys.stderr)
        print(f"Valid keys: {', '.join(sorted(valid_keys))}", file=sys.stderr)
        raise SystemExit(1)

    if key == "override":
        if len(values) < 2:
            print("Error: 'set override' requires <segment_id> and field=value... or reset", file=sys.stderr)
            raise SystemExit(1)
        segment_id = values[0]
        if values[1] == "reset":
            segment = asyncio.run(service.update_overrides(args.session, segment_id, reset=True))
        else:
            changes = _parse_override_values(values[1:])
            segment = asyncio.run(service.update_overrides(args.session, segment_id, changes))
        params = effective_params(segment)
        print(f"Updated: {segment_id} → {params.emotion}, stability {params.stability}, style {params.style} [{segment.render_status}]")

    elif key == "voice":
        if len(values) < 2:
            print("Error: 'set voice' requires <character> and <voice_id>", file=sys.stderr)
            raise SystemExit(1)
        name, voice_id = values[0], values[1]
        characters = service.store.load_characters(args.session)
        character = next((c for c in characters if c.name.lower() == name.lower()), None)
        if character is None:
            print(f"Error: Character '{name}' not in cast.", file=sys.stderr)
            raise SystemExit(1)
        result = asyncio.run(service.change_character_voice(args.session, character.id, voice_id))
        print(f"Updated: {result.character.name} → {voice_id}")
        if result.stale_count:
            print(f"Marked stale: {result.stale_count} segment(s) (re-render to apply)")

    elif key == "narrator-voice":
        if not values:
            print("Error: 'set narrator-voice' requires <voice_id>", file=sys.stderr)
            raise SystemExit(1)
        service.update_config(args.session, voice_id=values[0])
        print(f"Updated: narrator → {values[0]}")

    elif key == "multi-voice":
        enabled = _require_on_off(key, values)
        service.update_config(args.session, multi_voice=enabled)
        print(f"Updated: multi-voice → {values[0]}")

    elif key == "hide-speech-tags":
        enabled = _require_on_off(key, values)
        service.update_config(args.session, hide_speech_tags=enabled)
        print(f"Updated: hide-speech-tags → {values[0]}")


async def _render_all(service: ScriptService, session_id: str):
    def report(message):
        if isinstance(message, SegmentUpdated) and message.segment.render_status == RENDERED:
            done, total = editor.progress()
            print(f"  Rendered {done}/{total}: {message.segment.id}")
        elif isinstance(message, Notice):
            print(f"  {message.message}", file=sys.stderr)

    editor = ScriptEditor(service, session_id, listeners=[report])
    try:
        await editor.fetch_script()
        if editor.error is not None:
            raise editor.error
        return await editor.render_all()
    finally:
        await editor.aclose()


def cmd_render(args):
    """Render one segment, or every pending and stale segment."""
    service = _service()
    if args.segment:
        segment = asyncio.run(service.render_segment(args.session, args.segment))
        print(f"Rendered {segment.id} → {segment.audio_url} ({segment.duration_ms} ms)")
        return

    estimate = asyncio.run(service.usage_estimate(args.session))
    print(f"Rendering {estimate.pending_segments} segment(s), {estimate.estimated_chars} chars")
    result = asyncio.run(_render_all(service, args.session))
    print(f"Done: {len(result.rendered)} rendered, {len(result.errors)} failed")
    for error in result.errors:
        print(f"  {error['segment_id']}: {error['error']}", file=sys.stderr)
    if result.errors:
        raise SystemExit(1)


def cmd_preview(args):
    """Synthesize a short preview of one segment."""
    service = _service()
    handle = asyncio.run(service.preview_segment(args.session, args.segment))
    with handle:
        if args.output:
            shutil.copyfile(handle.path, args.output)
            print(f"Preview written to {args.output}")
        else:
            print(f"Preview synthesized: {handle.text}")


def cmd_usage(args):
    """Show the quota estimate for rendering everything pending."""
    estimate = asyncio.run(_service().usage_estimate(args.session))
    print(f"Pending segments: {estimate.pending_segments}")
    print(f"Estimated chars:  {estimate.estimated_chars}")
    print(f"Used / max:       {estimate.used_chars} / {estimate.max_chars}")
    print(f"Remaining:        {estimate.remaining_chars}")
    print(f"Estimated cost:   ${estimate.estimated_cost:.2f}")
    print(f"Can render all:   {'yes' if estimate.can_render_all else 'no'}")


def cmd_assemble(args):
    """Stitch all rendered segments into one MP3."""
    _check_ffmpeg()
    path = export_narration(_store(), args.session, title=args.title)
    print(f"Exported: {path}")


def cmd_list(args):
    """List all sessions."""
    store = _store()
    sessions = store.list_sessions()
    if not sessions:
        print("No sessions found.")
        return
    print("Sessions:")
    for name in sessions:
        status = store.session_status(name)
        done = status["render_status"].get(RENDERED, 0)
        marker = "[done]" if status["segments"] and done == status["segments"] else "[----]"
        print(f"  {marker} {name} ({done}/{status['segments']} rendered)")


def cmd_voices(args):
    """List available voices."""
    filter_str = args.filter.lower() if args.filter else None
    voices = VOICE_POOL
    if filter_str:
        voices = [v for v in voices if filter_str in v.lower()]
    if not voices:
        print("No matching voices found.")
        return
    print("Available voices:")
    for v in voices:
        print(f"  {v}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scene-narrator",
        description="Scene Narrator: validate generated scenes and render them as multi-voice narration",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress details")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # validate
    validate_parser = subparsers.add_parser("validate", help="Check a scene file without saving it")
    validate_parser.add_argument("file", help="Path to the tagged scene text")
    validate_parser.add_argument("--single-voice", action="store_true", help="Skip the dialogue density check")
    validate_parser.set_defaults(func=cmd_validate)

    # new
    new_parser = subparsers.add_parser("new", help="Add a scene to a session")
    new_parser.add_argument("session", help="Session name")
    new_parser.add_argument("file", help="Path to the tagged scene text")
    new_parser.add_argument("--force", action="store_true", help="Save even if validation fails (logged)")
    new_parser.set_defaults(func=cmd_new)

    # status
    status_parser = subparsers.add_parser("status", help="Show session status")
    status_parser.add_argument("session", help="Session name")
    status_parser.set_defaults(func=cmd_status)

    # set
    set_parser = subparsers.add_parser("set", help="Update settings, overrides or voices")
    set_parser.add_argument("session", help="Session name")
    set_parser.add_argument("key", help="Setting key")
    set_parser.add_argument("values", nargs="*", help="Setting value(s)")
    set_parser.set_defaults(func=cmd_set)

    # render
    render_parser = subparsers.add_parser("render", help="Render one segment or all pending")
    render_parser.add_argument("session", help="Session name")
    render_parser.add_argument("segment", nargs="?", help="Segment id (default: all pending and stale)")
    render_parser.set_defaults(func=cmd_render)

    # preview
    preview_parser = subparsers.add_parser("preview", help="Synthesize a short preview of a segment")
    preview_parser.add_argument("session", help="Session name")
    preview_parser.add_argument("segment", help="Segment id")
    preview_parser.add_argument("-o", "--output", help="Keep the preview at this path")
    preview_parser.set_defaults(func=cmd_preview)

    # usage
    usage_parser = subparsers.add_parser("usage", help="Show quota estimate")
    usage_parser.add_argument("session", help="Session name")
    usage_parser.set_defaults(func=cmd_usage)

    # assemble
    assemble_parser = subparsers.add_parser("assemble", help="Export rendered segments as one MP3")
    assemble_parser.add_argument("session", help="Session name")
    assemble_parser.add_argument("--title", help="Title tag for the MP3")
    assemble_parser.set_defaults(func=cmd_assemble)

    # list
    list_parser = subparsers.add_parser("list", help="List all sessions")
    list_parser.set_defaults(func=cmd_list)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.set_defaults(func=cmd_voices)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    try:
        args.func(args)
    except ScriptEditorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        for field_name, message in e.details:
            print(f"  {field_name}: {message}", file=sys.stderr)
        raise SystemExit(1)
