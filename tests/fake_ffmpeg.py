"""Stand-in for ffmpeg used by the test suite.

Behaviour is selected with FAKE_FFMPEG_MODE: ``ok`` (default), ``fail`` or
``hang``. When FAKE_FFMPEG_ARGS_FILE is set the argument vector is written
there, one argument per line, and FAKE_FFMPEG_PID_FILE receives the process id.
"""
import os
import sys
import time


def main(argv):
    mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
    args_file = os.environ.get("FAKE_FFMPEG_ARGS_FILE")
    if args_file:
        with open(args_file, "w") as fh:
            fh.write("\n".join(argv))
    pid_file = os.environ.get("FAKE_FFMPEG_PID_FILE")
    if pid_file:
        with open(pid_file, "w") as fh:
            fh.write(str(os.getpid()))

    inputs = argv.count("-i")
    sys.stderr.write("Input #0, matroska,webm, from 'video.webm':\n")
    sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 1000 kb/s\n")
    if inputs > 1:
        sys.stderr.write("Input #1, mp3, from 'audio.mp3':\n")
        sys.stderr.write("  Duration: 00:00:20.00, start: 0.000000, bitrate: 128 kb/s\n")
    sys.stderr.flush()
    # let the duration announcement land before any progress
    time.sleep(0.2)

    if mode == "hang":
        time.sleep(60)
        return 0

    for elapsed in (2500000, 5000000, 7500000, 12000000):
        sys.stdout.write(f"frame=1\nout_time_ms={elapsed}\nprogress=continue\n")
        sys.stdout.flush()
        sys.stderr.write(f"frame=  1 fps=0.0 time=00:00:0{elapsed // 1000000}.00\r")
        sys.stderr.flush()

    if mode == "fail":
        sys.stderr.write("\nError while encoding\n")
        return 1

    with open(argv[-1], "wb") as fh:
        fh.write(b"fake-mp4" * 1000)
    sys.stdout.write("progress=end\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
