"""
Speech in both directions, by shelling out.

The synthesis command is configurable (``voice.tts_command``, a list whose
items may contain ``{text_file}``, ``{output}`` and ``{voice}``); it must
write a WAV file. Voice notes are then transcoded to OGG Opus with ffmpeg.
Local playback uses ``voice.player`` (default ffplay).

Inbound voice notes go the other way: ``voice.transcribe_command`` (default
the whisper CLI) reads ``{input}`` and writes ``<input stem>.txt`` into
``{output_dir}``.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Optional

from watcher import config
from watcher.errors import VoiceError
from watcher.models import VoiceConfig

log = logging.getLogger(__name__)

DEFAULT_TTS_COMMAND = ["kokoro-tts", "{text_file}", "{output}", "--voice", "{voice}"]
DEFAULT_PLAYER = ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet", "{input}"]
DEFAULT_TRANSCRIBE_COMMAND = [
    "whisper", "{input}", "--model", "{model}", "--output_format", "txt",
    "--output_dir", "{output_dir}", "--verbose", "False",
]
VOICE_NOTE_MIMETYPE = "audio/ogg; codecs=opus"


def resolve_voice(voice: Optional[str], cfg: VoiceConfig) -> str:
    """Persona names map to voice ids; anything else is taken as a voice id."""
    if not voice:
        return cfg.default_voice
    for persona, voice_id in cfg.personas.items():
        if persona.lower() == voice.lower():
            return voice_id
    return voice


async def run_tool(argv: list[str], timeout: float) -> None:
    """Run an external audio tool; any failure becomes a VoiceError."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise VoiceError(f"{argv[0]} not found. Install it or set it in the voice config.")
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise VoiceError(f"{argv[0]} timed out after {timeout:g}s")
    if proc.returncode != 0:
        raise VoiceError(f"{argv[0]} failed: {stderr.decode(errors='replace').strip()[-300:]}")


class VoiceSynth:
    def __init__(self, tts_command: Optional[list[str]] = None, ffmpeg: Optional[str] = None,
                 player: Optional[list[str]] = None, timeout: Optional[float] = None):
        self.tts_command = tts_command or config.get("voice.tts_command", DEFAULT_TTS_COMMAND)
        self.ffmpeg = ffmpeg or config.get("voice.ffmpeg", "ffmpeg")
        self.player = player or config.get("voice.player", DEFAULT_PLAYER)
        self.timeout = timeout or float(config.get("voice.timeout", 120))

    async def _synthesize_wav(self, text: str, voice: str, workdir: Path) -> Path:
        if not text.strip():
            raise VoiceError("text is required")
        text_file = workdir / "input.txt"
        text_file.write_text(text)
        wav = workdir / "speech.wav"
        argv = [part.format(text_file=text_file, output=wav, voice=voice) for part in self.tts_command]
        log.info(f"Synthesizing speech: voice={voice}, {len(text)} chars")
        await run_tool(argv, self.timeout)
        if not wav.exists():
            raise VoiceError("TTS command produced no audio")
        return wav

    async def synthesize_voice_note(self, text: str, voice: str) -> bytes:
        """Speech as OGG Opus bytes, ready to send as a voice note."""
        with tempfile.TemporaryDirectory(prefix="watcher-tts-") as tmp:
            workdir = Path(tmp)
            wav = await self._synthesize_wav(text, voice, workdir)
            ogg = workdir / "speech.ogg"
            await run_tool([
                self.ffmpeg, "-y", "-i", str(wav),
                "-c:a", "libopus", "-b:a", "64k", "-ar", "24000", "-ac", "1",
                "-application", "voip", "-vbr", "off", str(ogg),
            ], self.timeout)
            if not ogg.exists():
                raise VoiceError("ffmpeg did not produce output file")
            data = ogg.read_bytes()
        log.info(f"Voice note ready: {len(data)} bytes")
        return data

    async def speak_locally(self, text: str, voice: str) -> None:
        with tempfile.TemporaryDirectory(prefix="watcher-tts-") as tmp:
            wav = await self._synthesize_wav(text, voice, Path(tmp))
            await run_tool([part.format(input=wav) for part in self.player], self.timeout)


class Transcriber:
    """Speech-to-text for inbound voice notes."""

    def __init__(self, command: Optional[list[str]] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.command = command or config.get("voice.transcribe_command", DEFAULT_TRANSCRIBE_COMMAND)
        self.model = model or config.get("voice.transcribe_model", "small")
        self.timeout = timeout or float(config.get("voice.timeout", 120))

    async def transcribe(self, audio: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="watcher-stt-") as tmp:
            workdir = Path(tmp)
            audio_file = workdir / "audio.ogg"
            audio_file.write_bytes(audio)
            argv = [part.format(input=audio_file, output_dir=workdir, model=self.model) for part in self.command]
            log.info(f"Transcribing {len(audio)} bytes of audio (model={self.model})")
            await run_tool(argv, self.timeout)
            transcript_file = workdir / "audio.txt"
            if not transcript_file.exists():
                raise VoiceError("transcription produced no text file")
            transcript = transcript_file.read_text(errors="replace").strip()
        if not transcript:
            raise VoiceError("transcription was empty")
        return transcript
