"""Star PSF fitting, wavelet structure removal and helpers for astronomical frames."""

__version__ = "0.1.1"

__all__ = ["matrix", "psf_fitting", "utils", "wavelets"]