from typing import List, Optional


class FlightSignError(Exception):
    """Base error for every failure surfaced at the command boundary"""

    default_suggestion = "Re-run with the same arguments once the problem above is fixed."

    def __init__(self, message: str, recovery_suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.recovery_suggestion = recovery_suggestion or self.default_suggestion

    def __str__(self) -> str:
        return self.message


class ConfigurationError(FlightSignError):
    default_suggestion = (
        "Run 'flightsign init' for this team or fix the values in its config.env."
    )


class AuthenticationError(FlightSignError):
    default_suggestion = (
        "Check API_KEY_ID, API_ISSUER_ID and that the AuthKey_<KEYID>.p8 file "
        "belongs to this team and has not been revoked in App Store Connect."
    )


class RemoteServiceError(FlightSignError):
    """App Store Connect could not be reached or refused a request"""

    default_suggestion = (
        "Check network access and https://developer.apple.com/system-status/, "
        "then run the command again."
    )


class CertificateLimitExceededError(FlightSignError):
    default_suggestion = (
        "Revoke an unused certificate at "
        "https://developer.apple.com/account/resources/certificates/list "
        "and run 'flightsign setup_certificates' again."
    )


class InvalidCertificateError(FlightSignError):
    default_suggestion = (
        "Remove the broken files from the team's certificates/ directory "
        "and run 'flightsign setup_certificates' to recreate them."
    )


class ContainerCreationError(FlightSignError):
    default_suggestion = (
        "Make sure the certificates directory is writable and that the "
        "'security' tool is available (macOS only)."
    )


class CertificateImportError(FlightSignError):
    default_suggestion = (
        "Check P12_PASSWORD in config.env, or delete the unreadable .p12 files "
        "so fresh certificates can be created."
    )

    def __init__(
        self,
        message: str,
        imported: Optional[List[str]] = None,
        failed: Optional[List[str]] = None,
        recovery_suggestion: Optional[str] = None,
    ):
        super().__init__(message, recovery_suggestion)
        self.imported = list(imported or [])
        self.failed = list(failed or [])


class ProvisioningProfileCreationError(FlightSignError):
    default_suggestion = (
        "Confirm the bundle identifier is registered for this team and that a "
        "valid certificate of the required kind exists."
    )


class InvalidIpaError(FlightSignError):
    default_suggestion = (
        "Rebuild the archive and check that the exported IPA is signed and "
        "uses the expected bundle identifier."
    )


class BuildConflictError(FlightSignError):
    default_suggestion = (
        "Use --version-bump auto to let the build number be resolved, or pass "
        "--allow-renumber to accept the resolved number."
    )


class BuildError(FlightSignError):
    default_suggestion = "Open the project in Xcode and fix the build errors shown above."


class UploadFailedError(FlightSignError):
    default_suggestion = (
        "Check network access to App Store Connect, then upload the IPA "
        "manually with Transporter if the problem persists."
    )

    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        recovery_suggestion: Optional[str] = None,
    ):
        super().__init__(message, recovery_suggestion)
        self.last_error = last_error


class ProcessingMonitoringError(FlightSignError):
    default_suggestion = (
        "The upload succeeded. Check the build status in App Store Connect "
        "under TestFlight."
    )
