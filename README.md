# psfguard

A library for judging the quality of astronomical frames: point spread
function (PSF) fitting of stars, wavelet removal of large-scale structure,
and a few small helpers for pixel data and capture metadata.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## PSF fitting

`psfguard.psf_fitting` fits a Gaussian or a Moffat (beta = 4) model to a star
with a bounded Levenberg–Marquardt optimiser. The image is given as a flat
sequence of 16-bit pixel values in row-major order.

```python
from psfguard.psf_fitting import PSFFitter, PSFType

fitter = PSFFitter(PSFType.parse("gaussian"))
model = fitter.fit_star(
    data, width, height,
    center_x=120.3, center_y=88.7,
    bbox_width=9.0, bbox_height=9.0,
    background=400.0, peak_brightness=12000.0,
)
if model is not None:
    print(model.fwhm, model.eccentricity, model.r_squared, model.rmse)
    observed, fitted, residuals = fitter.generate_residuals(
        data, width, height, 120.3, 88.7, model
    )
```

- `PSFType.parse` accepts `none`, `gaussian`, `moffat`, `moffat4` and
  `moffat_4`, in any case; anything else raises `ValueError`.
- `PSFFitter` has the fields `psf_type`, `roi_size` (default 32) and
  `sample_spacing` (default 0.5). `fit_star` samples a square region around
  the star by bilinear interpolation and returns a `PSFModel`, or `None` when
  the type is `PSFType.NONE`, when fewer than 10 samples fall inside the
  image, or when the fit cannot be made.
- `PSFModel` holds amplitude, background, offsets `x0`/`y0`, `sigma_x`,
  `sigma_y`, `theta`, `r_squared`, `rmse`, `fwhm` and `eccentricity`;
  `calculate_fwhm` and `calculate_eccentricity` compute the last two from the
  sigmas.
- `generate_residuals` returns three `roi_size` × `roi_size` grids (observed,
  fitted, residual), with zeros where the grid falls outside the image, or
  `None` for `PSFType.NONE`.

The building blocks are public too: `GaussianPSF` and `Moffat4PSF` (`value`,
`gradient` and `sigma_to_fwhm`, accepting scalar or array coordinates),
`bilinear_sample`, `extract_roi` and `LevenbergMarquardt`. The optimiser's
`fit` raises `ValueError` when there are fewer points than parameters or the
bounds do not match the parameters, and its damping carries over between
calls.

## Wavelet structure removal

`psfguard.wavelets.WaveletStructureRemover` subtracts successive à trous B3
spline layers from an image, leaving small structures such as stars and noise.

```python
from psfguard.wavelets import WaveletStructureRemover

remover = WaveletStructureRemover(layers=6)
residual = remover.remove_structures(pixels, width, height)
```

`remove_structures` and `remove_structures_multi_method` both return the à
trous residual as a flat NumPy array. `preprocess_with_edge_preserving`
returns the data unchanged, as a flat float array. All three raise
`ValueError` when the data does not hold `width * height` values.

## Matrix helpers

`psfguard.matrix` turns flat pixel data into 2-D NumPy arrays and back
(`create_mat_from_u16`, `create_mat_from_u8`, `mat_to_u16_list`,
`mat_to_u8_list`), builds Gaussian templates min–max scaled to 0–1 with
`create_gaussian_template`, and divides 16-bit data by its maximum with
`normalize_u16_to_f32`. The array builders raise `ValueError` when there are
more values than pixels or a value is out of range for the type; missing
values are left as zero.

## Utilities

```python
from psfguard.utils import truncate_string, extract_filename

truncate_string("hello world", 8)        # "hello..."
extract_filename('{"FileName": "C:\\\\images\\\\m31.fits"}')  # "m31.fits"
```

`truncate_string` raises `ValueError` if it has to cut a string to fewer than
three characters. `extract_filename` returns `None` for invalid JSON or when
`FileName` is missing or not a string.

## What it does not do

psfguard is a library only. It has no command-line tool, does not read FITS
files or capture databases, and does not detect stars: the caller supplies
pixel data, and for PSF fitting the star's centre, bounding box, background
and peak brightness.