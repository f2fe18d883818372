"""
ACME issuer for certificate issuance.

Provides the ACME protocol operations needed by the renewal orchestrator
using the acme library: account registration and HTTP-01 issuance for
one ordered domain group.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import josepy as jose
from acme import challenges, client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from core.challenge_server import ChallengeResponder
from models.certificate import Registration

logger = logging.getLogger(__name__)

USER_AGENT = "certwarden/1.0"


class ACMEError(Exception):
    """Base exception for ACME operations."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ACMEChallengeError(ACMEError):
    """ACME challenge failed."""

    pass


class ACMEAuthorizationError(ACMEError):
    """ACME authorization failed."""

    pass


class ACMEOrderError(ACMEError):
    """ACME order failed."""

    pass


class ACMERegistrationError(ACMEError):
    """ACME account registration failed."""

    pass


@dataclass
class IssuedCertificate:
    """Certificate bundle returned by the CA."""

    certificate: bytes  # full chain, leaf first
    private_key: bytes
    chain: bytes


def account_jwk(private_key) -> tuple[jose.JWK, jose.JWASignature]:
    """JWK and signature algorithm for an account private key."""
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return jose.JWKEC(key=private_key), jose.ES256
    return jose.JWKRSA(key=private_key), jose.RS256


def make_csr(private_key, domains: list[str]) -> bytes:
    """
    Create a PEM CSR for the given domains.

    The first domain becomes the common name; every domain is a SAN.
    """
    builder = x509.CertificateSigningRequestBuilder()
    builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
    san_list = [x509.DNSName(domain) for domain in domains]
    builder = builder.add_extension(x509.SubjectAlternativeName(san_list), critical=False)
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


def split_fullchain(fullchain_pem: bytes) -> tuple[bytes, bytes]:
    """Split a full chain into (leaf certificate, chain)."""
    certs = fullchain_pem.split(b"-----END CERTIFICATE-----")
    cert_pem = certs[0] + b"-----END CERTIFICATE-----\n"
    chain_pem = b"-----END CERTIFICATE-----".join(certs[1:])
    if chain_pem.strip():
        chain_pem = chain_pem.strip() + b"\n"
    else:
        chain_pem = b""
    return cert_pem, chain_pem


def registration_from_resource(regr: messages.RegistrationResource) -> Registration:
    body = regr.body
    return Registration(
        uri=regr.uri,
        contact=list(body.contact or ()),
        terms_of_service_agreed=body.terms_of_service_agreed is not False,
        status=body.status,
    )


class ACMEIssuer:
    """
    ACME protocol operations for one CA directory and one account key.

    Blocking client calls run in worker threads; callers await them in
    sequence.
    """

    def __init__(self, directory_url: str, account_key, responder: ChallengeResponder):
        self.directory_url = directory_url
        self.responder = responder
        self._account_key, self._alg = account_jwk(account_key)
        self._client: ClientV2 | None = None

    async def _get_client(self) -> ClientV2:
        """Get or create ACME client."""
        if self._client:
            return self._client

        def create_client():
            net = client.ClientNetwork(self._account_key, alg=self._alg, user_agent=USER_AGENT)
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            return ClientV2(directory, net=net)

        try:
            self._client = await asyncio.to_thread(create_client)
        except Exception as e:
            raise ACMEError(
                f"Failed to reach ACME directory {self.directory_url}: {e}",
                suggestion="Check network access to the CA and the caAuthority URL",
            ) from e
        return self._client

    async def register(self, email: str) -> Registration:
        """
        Register the account key with the CA, agreeing to the terms of service.

        An account that already exists for the key is queried and returned.
        """
        acme_client = await self._get_client()

        def do_registration():
            regr = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)
            try:
                account_resource = acme_client.new_account(regr)
                logger.info(f"Created new ACME account for {email}")
                return account_resource
            except acme_errors.ConflictError as conflict:
                # Account already exists for this key, query it by location
                logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                existing_regr = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                return acme_client.query_registration(existing_regr)

        try:
            account_resource = await asyncio.to_thread(do_registration)
        except Exception as e:
            raise ACMERegistrationError(
                f"Error registering {email} with ACME server: {e}",
                suggestion="Check the contact email and the CA terms of service",
            ) from e

        registration = registration_from_resource(account_resource)
        logger.debug(f"ACME registration successful: uri={registration.uri}")
        return registration

    async def use_registration(self, registration: Registration) -> None:
        """Bind a previously stored registration to the client."""
        acme_client = await self._get_client()
        body = messages.Registration.from_data(terms_of_service_agreed=registration.terms_of_service_agreed)
        acme_client.net.account = messages.RegistrationResource(uri=registration.uri, body=body)
        logger.debug(f"ACME registration loaded: uri={registration.uri}")

    def _http_challenge(self, authorization: messages.AuthorizationResource) -> messages.ChallengeBody:
        for challenge in authorization.body.challenges:
            if isinstance(challenge.chall, challenges.HTTP01):
                return challenge
        raise ACMEChallengeError(
            f"No HTTP-01 challenge offered for {authorization.body.identifier.value}",
            suggestion="Server may only support DNS-01 challenges",
        )

    async def obtain_certificate(self, domains: list[str], timeout: int = 300) -> IssuedCertificate:
        """
        Order, validate and download one certificate for all domains.

        Args:
            domains: Ordered domain names, the first is the subject
            timeout: Seconds to wait for validation and finalization

        Returns:
            IssuedCertificate with the full chain bundle and its private key
        """
        acme_client = await self._get_client()

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        csr_pem = make_csr(private_key, domains)

        try:
            order = await asyncio.to_thread(acme_client.new_order, csr_pem)
            logger.info(f"Created ACME order for domains: {domains}")
        except Exception as e:
            raise ACMEOrderError(
                f"Failed to create order: {e}", suggestion="Check that all domains are valid and resolvable"
            ) from e

        tokens = []
        try:
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue
                challenge = self._http_challenge(authz)
                response, validation = challenge.chall.response_and_validation(acme_client.net.key)
                token = challenge.chall.encode("token")
                self.responder.add_token(token, validation)
                tokens.append(token)

                try:
                    await asyncio.to_thread(acme_client.answer_challenge, challenge, response)
                    logger.info(f"Responded to challenge for {authz.body.identifier.value}")
                except Exception as e:
                    raise ACMEChallengeError(
                        f"Failed to respond to challenge: {e}",
                        suggestion=f"Ensure http://{authz.body.identifier.value}/.well-known/acme-challenge/ "
                        f"is proxied to port {self.responder.port}",
                    ) from e

            deadline = datetime.now() + timedelta(seconds=timeout)
            try:
                finalized = await asyncio.to_thread(acme_client.poll_and_finalize, order, deadline)
            except acme_errors.ValidationError as e:
                raise ACMEAuthorizationError(
                    f"Authorization failed for {domains}: {e}",
                    suggestion="Check that every domain points to this server and port 80 is reachable",
                ) from e
            except acme_errors.TimeoutError as e:
                raise ACMEAuthorizationError(
                    f"Authorization timed out after {timeout} seconds", suggestion="Check domain accessibility"
                ) from e
            except Exception as e:
                raise ACMEOrderError(
                    f"Failed to finalize order: {e}", suggestion="Check that all authorizations completed successfully"
                ) from e
        finally:
            for token in tokens:
                self.responder.remove_token(token)

        fullchain_pem = finalized.fullchain_pem.encode("utf-8")
        _, chain_pem = split_fullchain(fullchain_pem)
        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        logger.info(f"Successfully obtained certificate for {domains}")
        return IssuedCertificate(certificate=fullchain_pem, private_key=private_key_pem, chain=chain_pem)
