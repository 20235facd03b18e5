"""
RUVSeq algorithm (Remove Unwanted Variation from RNA-seq counts):

Model: log E[Y] = W alpha + X beta + O, where
    - Y [n, J] read counts of n samples and J genes
    - X [n, p] covariates of interest (e.g. treatment group)
    - W [n, k] unobserved factors of unwanted variation (batches, library preparation)
    - O [n, J] optional offset (e.g. from upper-quartile normalization)

1. Preprocessing:
    - filtering of lowly expressed genes
    - upper-quartile between-sample normalization
    - (for RUVr) first-pass negative binomial GLM of counts on X,
        saving deviance residuals

2. Estimation of W, on the log(Y + epsilon) scale:
    - RUVg: leading left singular vectors of centered log counts
        of negative control genes (e.g. ERCC spike-ins, empirical controls)
    - RUVs: within-group deviations of replicate samples
        (samples with constant X) give loadings alpha,
        W is obtained by regressing control genes on them
    - RUVr: leading left singular vectors of the centered GLM residuals
    savings:
        - W
        - counts with W alpha regressed out, for visualization only

3. Differential expression
    - negative binomial GLM of raw counts on [X, W]
        with the same W as estimated above
    - likelihood ratio test for the covariates of interest

4*. Diagnostics: relative log expression (RLE), PCA
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
