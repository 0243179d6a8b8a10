import argparse
import json
import logging
import os
import sys

import librosa
import numpy as np
import soundfile as sf

# Allow running from a checkout without installing
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from resonance.pipeline import AnalyserConfig, PipelineConfig, ResonanceSession, SpectrumAnalyser  # noqa: E402
from resonance.pipeline.instrumentation import SessionLogger  # noqa: E402
from resonance.pipeline.utils_config import apply_dotted_overrides, parse_override  # noqa: E402

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the resonance analysis core over an audio file")
    parser.add_argument("--audio_path", required=True, help="Path to input audio file")
    parser.add_argument("--sample_rate", type=int, default=44100, choices=[22050, 44100, 48000],
                        help="Analysis sample rate (audio is resampled to it)")
    parser.add_argument("--tick_hz", type=float, default=60.0, help="Ticks per second")
    parser.add_argument("--fft_size", type=int, default=8192, help="FFT size (power of two)")
    parser.add_argument("--set", dest="overrides", action="append", default=[],
                        metavar="KEY=VALUE", help="Config override, e.g. gate.hold_ms=80 (repeatable)")
    parser.add_argument("--log_dir", default=None, help="Write JSONL session events under this directory")
    parser.add_argument("--output", default=None, help="Write tick lines here instead of stdout")
    return parser.parse_args(argv)


def load_mono(path: str, sample_rate: int) -> np.ndarray:
    y, sr = sf.read(path, dtype="float32", always_2d=True)
    y = librosa.to_mono(y.T)
    if sr != sample_rate:
        y = librosa.resample(y, orig_sr=sr, target_sr=sample_rate)
    return y.astype(np.float64)


def main(argv=None) -> int:
    args = parse_args(argv)

    if not os.path.exists(args.audio_path):
        logger.error(f"Audio file not found: {args.audio_path}")
        return 1
    if args.tick_hz <= 0:
        logger.error("--tick_hz must be positive")
        return 2

    try:
        overrides = dict(parse_override(text) for text in args.overrides)
        config = PipelineConfig(analyser=AnalyserConfig(fft_size=args.fft_size))
        config = apply_dotted_overrides(config, overrides)
        analyser = SpectrumAnalyser(config.analyser, sample_rate=args.sample_rate, spectrum=config.spectrum)
    except (KeyError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        y = load_mono(args.audio_path, args.sample_rate)
    except (RuntimeError, sf.LibsndfileError) as e:
        logger.error(f"Failed to read audio: {e}")
        return 1

    session_logger = SessionLogger(args.log_dir) if args.log_dir else None
    session = ResonanceSession(config, session_logger=session_logger)

    hop = max(1, int(round(args.sample_rate / args.tick_hz)))
    dt_ms = 1000.0 * hop / args.sample_rate
    logger.info(f"Analysing {args.audio_path}: {len(y) / args.sample_rate:.2f}s, hop {hop} samples")

    out = open(args.output, "w", encoding="utf-8") if args.output else sys.stdout
    try:
        for start in range(0, len(y), hop):
            snapshot = analyser.process(y[start:start + hop])
            result = session.tick(snapshot, dt_ms)
            out.write(json.dumps(result.as_dict()) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()
        if session_logger:
            session_logger.finalize()

    logger.info("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
