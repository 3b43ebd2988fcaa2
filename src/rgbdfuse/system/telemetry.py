class Telemetry:
    def __init__(self):
        self.frames = []

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        self.frames.append(rec)

    def last(self) -> dict | None:
        return self.frames[-1] if self.frames else None
