# certificate_manager.py
import ssl
import logging
import ipaddress
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Optional
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)


class CertificateManager:
    """Самоподписанный сертификат для HTTPS-листенера прокси"""

    def __init__(self, certs_dir: Optional[Path] = None, hostname: str = "localhost"):
        """
        Args:
            certs_dir: Каталог для сертификатов (по умолчанию <app data>/certificates)
            hostname: Имя/IP, на которое выписывается сертификат
        """
        if certs_dir is None:
            from core.config_manager import get_app_data_dir
            certs_dir = get_app_data_dir() / "certificates"
        certs_dir = Path(certs_dir)
        certs_dir.mkdir(parents=True, exist_ok=True)

        self.hostname = hostname
        self.cert_path = certs_dir / "proxy.crt"
        self.key_path = certs_dir / "proxy.key"

    def _subject_alternative_names(self) -> x509.SubjectAlternativeName:
        names = [x509.DNSName("localhost"), x509.IPAddress(ipaddress.IPv4Address("127.0.0.1"))]
        try:
            address = ipaddress.ip_address(self.hostname)
            if address != ipaddress.IPv4Address("127.0.0.1"):
                names.append(x509.IPAddress(address))
        except ValueError:
            if self.hostname != "localhost":
                names.append(x509.DNSName(self.hostname))
        return x509.SubjectAlternativeName(names)

    def generate_self_signed_certificate(self) -> bool:
        """Генерирует самоподписанный сертификат"""
        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=2048,
            )

            subject = issuer = x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Purge Proxy"),
                x509.NameAttribute(NameOID.COMMON_NAME, self.hostname),
            ])

            now = datetime.now(timezone.utc)
            cert = x509.CertificateBuilder().subject_name(
                subject
            ).issuer_name(
                issuer
            ).public_key(
                private_key.public_key()
            ).serial_number(
                x509.random_serial_number()
            ).not_valid_before(
                now
            ).not_valid_after(
                now + timedelta(days=365)
            ).add_extension(
                self._subject_alternative_names(), critical=False
            ).sign(private_key, hashes.SHA256())

            with open(self.key_path, "wb") as key_file:
                key_file.write(private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.TraditionalOpenSSL,
                    encryption_algorithm=serialization.NoEncryption(),
                ))

            with open(self.cert_path, "wb") as cert_file:
                cert_file.write(cert.public_bytes(
                    encoding=serialization.Encoding.PEM
                ))

            logger.info(f"✅ Самоподписанный сертификат создан: {self.cert_path}")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"❌ Ошибка генерации сертификата: {e}")
            return False

    def check_certificates_exist(self) -> bool:
        """Проверяет существование сертификатов"""
        return self.cert_path.exists() and self.key_path.exists()

    def get_certificate_days_remaining(self) -> int:
        """Количество дней до истечения сертификата (-1 если прочитать не удалось)"""
        if not self.cert_path.exists():
            return -1

        try:
            cert = x509.load_pem_x509_certificate(self.cert_path.read_bytes())
            return max(0, (cert.not_valid_after_utc - datetime.now(timezone.utc)).days)
        except (OSError, ValueError) as e:
            logger.error(f"Ошибка проверки срока действия сертификата: {e}")
            return -1

    def ensure_certificates_exist(self) -> bool:
        """Убеждается, что действующие сертификаты существуют, и создает их при необходимости"""
        if not self.check_certificates_exist():
            logger.warning("Сертификаты не найдены, генерируем новые...")
            return self.generate_self_signed_certificate()

        if self.get_certificate_days_remaining() <= 0:
            logger.warning("⚠️ Сертификат истек или поврежден, генерируем новый...")
            return self.generate_self_signed_certificate()

        return True

    def create_ssl_context(self) -> ssl.SSLContext:
        """SSL контекст для aiohttp TCPSite"""
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(certfile=str(self.cert_path), keyfile=str(self.key_path))
        return ssl_context
