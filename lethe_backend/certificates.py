import base64
import hashlib
import io
import json
import os
import threading
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import ArtifactError
from .logs import structured_log
from .models import Session
from .parser import format_duration

SIGNATURE_FIELDS = ("signature", "pubkey", "keyId")

# key files are created at most once even when several jobs finish together
_key_lock = threading.Lock()


class ContentLog:
    """Append-only session log that hashes exactly the bytes it writes."""

    def __init__(self, path: str):
        self.path = path
        self._f = open(path, "ab")
        self._sha = hashlib.sha256()
        self.bytes_written = 0
        self.error: Optional[str] = None

    def write(self, data: bytes):
        if self._f is None or self.error:
            return
        try:
            self._f.write(data)
            self._f.flush()
        except OSError as e:
            self.error = f"log write failed: {e}"
            structured_log("log_write_failed", path=self.path, error=str(e))
            return
        self._sha.update(data)
        self.bytes_written += len(data)

    def hexdigest(self) -> str:
        return self._sha.hexdigest()

    def close(self):
        if self._f is not None:
            try:
                self._f.close()
            finally:
                self._f = None


def file_sha256(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            h.update(block)
    return h.hexdigest()


def _signing_payload(summary: Dict[str, Any]) -> bytes:
    body = {k: v for k, v in summary.items() if k not in SIGNATURE_FIELDS}
    return json.dumps(body, separators=(",", ":"), sort_keys=True).encode()


def load_signing_key(keys_dir: str) -> Ed25519PrivateKey:
    with _key_lock:
        return _load_or_create_key(keys_dir)


def _load_or_create_key(keys_dir: str) -> Ed25519PrivateKey:
    os.makedirs(keys_dir, exist_ok=True)
    active_meta = os.path.join(keys_dir, "key_active.txt")
    if os.path.exists(active_meta):
        with open(active_meta) as f:
            kid = f.read().strip()
        kpath = os.path.join(keys_dir, f"{kid}.pem")
        if os.path.exists(kpath):
            with open(kpath, "rb") as f:
                return serialization.load_pem_private_key(f.read(), password=None)
    key = Ed25519PrivateKey.generate()
    raw = key.public_key().public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)
    kid = hashlib.sha256(raw).hexdigest()[:16]
    with open(os.path.join(keys_dir, f"{kid}.pem"), "wb") as f:
        f.write(key.private_bytes(encoding=serialization.Encoding.PEM,
                                  format=serialization.PrivateFormat.PKCS8,
                                  encryption_algorithm=serialization.NoEncryption()))
    with open(active_meta, "w") as f:
        f.write(kid)
    structured_log("signing_key_generated", key_id=kid)
    return key


def verify_certificate(summary: Dict[str, Any]) -> bool:
    """Check the Ed25519 signature of a certificate JSON document."""
    try:
        pub = Ed25519PublicKey.from_public_bytes(base64.b64decode(summary["pubkey"]))
        pub.verify(base64.b64decode(summary["signature"]), _signing_payload(summary))
        return True
    except (KeyError, TypeError, ValueError, InvalidSignature):
        return False


class CertificateGenerator:
    def __init__(self, certs_dir: str, keys_dir: Optional[str] = None, sign: bool = True):
        self.certs_dir = certs_dir
        self.keys_dir = keys_dir
        self.sign = sign and bool(keys_dir)

    def build_summary(self, session: Session, content_hash: str, completed_at: datetime) -> Dict[str, Any]:
        elapsed = max(0.0, (completed_at - session.started_at).total_seconds())
        summary = {
            "device": session.device,
            "config": session.config.to_public(),
            "sessionId": session.id,
            "started": session.started_at.isoformat(),
            "completed": completed_at.isoformat(),
            "elapsed": format_duration(elapsed),
            "elapsedSeconds": elapsed,
            "logSha256": content_hash,
        }
        if self.sign:
            key = load_signing_key(self.keys_dir)
            pub = key.public_key().public_bytes(encoding=serialization.Encoding.Raw,
                                                format=serialization.PublicFormat.Raw)
            summary["signature"] = base64.b64encode(key.sign(_signing_payload(summary))).decode()
            summary["pubkey"] = base64.b64encode(pub).decode()
            summary["keyId"] = hashlib.sha256(pub).hexdigest()[:16]
        return summary

    def generate(self, session: Session, content_hash: str, completed_at: datetime) -> Tuple[str, str]:
        """Write ``<id>.json`` and ``<id>.pdf``; raise ArtifactError on failure."""
        json_path = os.path.join(self.certs_dir, f"{session.id}.json")
        pdf_path = os.path.join(self.certs_dir, f"{session.id}.pdf")
        try:
            os.makedirs(self.certs_dir, exist_ok=True)
            summary = self.build_summary(session, content_hash, completed_at)
            with open(json_path, "w") as f:
                json.dump(summary, f, indent=2)
            render_pdf(pdf_path, summary)
        except Exception as e:
            raise ArtifactError(f"Certificate generation failed: {e}", details={"sessionId": session.id})
        structured_log("certificate_generated", session_id=session.id, json=json_path, pdf=pdf_path)
        return json_path, pdf_path


def _qr_reader(data: str) -> Optional[ImageReader]:
    try:
        import qrcode
        qr = qrcode.QRCode(version=1, box_size=2, border=2)
        qr.add_data(data)
        qr.make(fit=True)
        buf = io.BytesIO()
        qr.make_image(fill_color="black", back_color="white").save(buf, format="PNG")
        buf.seek(0)
        return ImageReader(buf)
    except Exception as e:
        # the certificate is still valid without the QR block
        structured_log("qr_generation_failed", error=str(e))
        return None


def render_pdf(pdf_path: str, summary: Dict[str, Any]):
    cfg = summary["config"]
    c = canvas.Canvas(pdf_path, pagesize=letter)
    c.setFont("Helvetica-Bold", 18)
    c.drawCentredString(306, 740, "Lethe - Certificate of Sanitization")
    c.setFont("Helvetica", 11)
    lines = [
        f"Session ID: {summary['sessionId']}",
        f"Device: {summary['device']}",
        f"Scheme: {cfg['scheme']}",
        f"Verify: {cfg['verify']}",
        f"Block Size: {cfg['blocksize']}",
        f"Offset: {cfg['offset']}",
        f"Retries: {cfg['retries']}",
        "",
        f"Started: {summary['started']}",
        f"Completed: {summary['completed']}",
        f"Elapsed: {summary['elapsed']}",
        "",
        f"Log SHA-256: {summary['logSha256']}",
    ]
    if summary.get("keyId"):
        lines.append(f"Signing key: {summary['keyId']}")
        lines.append(f"Signature: {summary['signature'][:48]}...")
    y = 700
    for line in lines:
        if line:
            c.drawString(72, y, line)
        y -= 18
    qr = _qr_reader(f"lethe://verify?session={summary['sessionId']}&sha256={summary['logSha256']}")
    if qr is not None:
        c.drawImage(qr, 430, 560, width=120, height=120, preserveAspectRatio=True, mask="auto")
    c.setFont("Helvetica", 9)
    c.setFillColorRGB(0.4, 0.4, 0.4)
    c.drawCentredString(306, y - 30, "This document certifies that the above device was sanitized using the Lethe utility.")
    c.save()
