from certregistry.models.certificate import CertificateEntry, OrphanedUpload
from certregistry.models.institution import Institution, InstitutionRequest

__all__ = ["CertificateEntry", "Institution", "InstitutionRequest", "OrphanedUpload"]
