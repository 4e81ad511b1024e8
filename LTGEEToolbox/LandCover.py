import ee
import pandas as pd

from .ImageryService import ELEVATION_DATASET

# CORINE Land Cover level-3 codes, in the order used by every remap table below
CORINE_CLASSES = [
    111, 112, 121, 122, 123, 124, 131, 132, 133, 141, 142,
    211, 212, 213, 221, 222, 223, 231, 241, 242, 243, 244,
    311, 312, 313, 321, 322, 323, 324, 331, 332, 333, 334, 335,
    411, 412, 421, 422, 423,
    511, 512, 521, 522, 523,
]

# Level 0: artificial (1), agricultural (2), forest and semi-natural (3); water bodies and wetlands dropped (0)
CORINE_LEVEL_0 = [1] * 11 + [2] * 11 + [3] * 12 + [0] * 5 + [0] * 5

# Level 1: artificial, agricultural, forest and semi-natural, wetlands, water bodies
CORINE_LEVEL_1 = [1] * 11 + [2] * 11 + [3] * 12 + [4] * 5 + [5] * 5

# Level 2: the 15 CORINE level-2 groups
CORINE_LEVEL_2 = (
    [1, 1]              # urban fabric
    + [2, 2, 2, 2]      # industrial, commercial and transport units
    + [3, 3, 3]         # mine, dump and construction sites
    + [4, 4]            # artificial, non-agricultural vegetated areas
    + [5, 5, 5]         # arable land
    + [6, 6, 6]         # permanent crops
    + [7]               # pastures
    + [8, 8, 8, 8]      # heterogeneous agricultural areas
    + [9, 9, 9]         # forests
    + [10, 10, 10, 10]  # scrub and/or herbaceous vegetation
    + [11, 11, 11, 11, 11]  # open spaces with little or no vegetation
    + [12, 12]          # inland wetlands
    + [13, 13, 13]      # maritime wetlands
    + [14, 14]          # inland waters
    + [15, 15, 15]      # marine waters
)

_REMAP_LEVELS = {0: CORINE_LEVEL_0, 1: CORINE_LEVEL_1, 2: CORINE_LEVEL_2}

CLASS_BAND = "landcover"


def remap_table(class_level, custom_classes=None):
    """
    Returns the (original, new) class lists used to remap CORINE level-3 codes.

    Args:
        class_level (int): 0 (3 classes, water and wetlands dropped), 1 (5 classes), 2 (15 classes),
            3 (original 44 classes, no remap) or 4 (custom table).
        custom_classes (list of int, optional): 44 new class values, required for class_level 4.

    Returns:
        tuple: (original classes, new classes), or None for class_level 3.

    Raises:
        ValueError: if the level is unknown or the custom table does not have one value per CORINE class.
    """
    if class_level in _REMAP_LEVELS:
        return list(CORINE_CLASSES), list(_REMAP_LEVELS[class_level])
    if class_level == 3:
        return None
    if class_level == 4:
        if custom_classes is None or len(custom_classes) != len(CORINE_CLASSES):
            raise ValueError(
                f"custom_classes must provide {len(CORINE_CLASSES)} values (one per CORINE class) for class_level 4."
            )
        return list(CORINE_CLASSES), [int(c) for c in custom_classes]
    raise ValueError(f"Unknown class_level {class_level}. Choose 0, 1, 2, 3 or 4.")


def create_training_image(year, aoi, dataset="CORINE", class_level=1, custom_classes=None):
    """
    Builds a training class image from the CORINE Land Cover map of a given year, remapped to the requested
    class level.

    Args:
        year (int or str): CORINE release year (e.g. 2018).
        aoi (ee.Geometry): area of interest to clip to.
        dataset (str): land cover dataset. Only 'CORINE' is supported.
        class_level (int): see remap_table. Level 0 masks water bodies and wetlands.
        custom_classes (list of int, optional): custom remap table for class_level 4.

    Returns:
        ee.Image: single band 'landcover' image.

    Raises:
        ValueError: on an unsupported dataset, level or custom table.
    """
    if dataset != "CORINE":
        raise ValueError(f"Unsupported training dataset '{dataset}'. Only 'CORINE' is available.")
    table = remap_table(class_level, custom_classes)

    corine = ee.Image(f"COPERNICUS/CORINE/V20/100m/{year}").clip(aoi)
    if table is None:
        return corine.select([0], [CLASS_BAND])

    original, new = table
    training_image = corine.remap(original, new).rename(CLASS_BAND)
    if class_level == 0:
        training_image = training_image.updateMask(training_image.select(CLASS_BAND).gt(0))
    return training_image


def add_terrain_bands(image, aoi):
    """
    Adds SRTM elevation ('elev') and slope ('slope') bands to an image.

    Args:
        image (ee.Image): input image.
        aoi (ee.Geometry): area of interest to clip the elevation model to.

    Returns:
        ee.Image: image with the two terrain bands appended.
    """
    dem = ee.Image(ELEVATION_DATASET).clip(aoi)
    elev = dem.select("elevation").rename("elev")
    slope = ee.Terrain.slope(dem.select("elevation")).rename("slope")
    return image.addBands(elev).addBands(slope)


def generate_gcp(
    training_image,
    image_to_classify,
    num_classes,
    split,
    aoi,
    dist="balanced",
    pct=None,
    num_points=5000,
    scale=30,
    sample_scale=10,
    tile_scale=1,
    seed=0,
):
    """
    Generates training and testing ground control points by stratified sampling of a class image and sampling the
    image to classify at those points.

    Sampling schemes:
        - 3 classes: weighted 15 / 25 / 60 percent of `num_points` for classes 1, 2, 3.
        - 5 classes with dist='weighted': `pct` gives the fraction of `num_points` for each of classes 1 to 5.
        - 5 classes with dist='balanced': `num_points / num_classes` points per class.

    Args:
        training_image (ee.Image): class image with a 'landcover' band.
        image_to_classify (ee.Image): predictor image.
        num_classes (int): 3 or 5.
        split (float): fraction of points used for training (the rest is used for testing).
        aoi (ee.Geometry): sampling region.
        dist (str): 'weighted' or 'balanced' (5 classes only).
        pct (list of float, optional): class fractions for dist='weighted'.
        num_points (int): total number of points. Large values (over ~5000) tend to exceed memory limits.
        scale (int): stratified sampling scale in meters.
        sample_scale (int): scale in meters for sampling the predictor image.
        tile_scale (int): tileScale passed to sampleRegions.
        seed (int): seed of the random train/test split column.

    Returns:
        dict: 'training' and 'testing' ee.FeatureCollection objects.

    Raises:
        ValueError: on an unsupported combination of classes and distribution, or an invalid split/pct.
    """
    if not 0 < split < 1:
        raise ValueError(f"split must be between 0 and 1, got {split}")

    if num_classes == 3:
        sample = training_image.stratifiedSample(
            numPoints=num_points,
            classBand=CLASS_BAND,
            region=aoi,
            scale=scale,
            projection=training_image.projection(),
            classValues=[1, 2, 3],
            classPoints=[round(num_points * 0.15), round(num_points * 0.25), round(num_points * 0.60)],
            geometries=True,
        )
    elif num_classes == 5 and dist == "weighted":
        if pct is None or len(pct) != 5:
            raise ValueError("pct must provide 5 class fractions when dist='weighted'.")
        sample = training_image.stratifiedSample(
            numPoints=num_points,
            classBand=CLASS_BAND,
            region=aoi,
            scale=scale,
            projection=training_image.projection(),
            classValues=[1, 2, 3, 4, 5],
            classPoints=[round(num_points * p) for p in pct],
            geometries=True,
        )
    elif num_classes == 5 and dist == "balanced":
        sample = training_image.stratifiedSample(
            numPoints=round(num_points / num_classes),
            classBand=CLASS_BAND,
            region=aoi,
            scale=scale,
            projection=training_image.projection(),
            geometries=True,
        )
    else:
        raise ValueError(
            f"Unsupported sampling scheme: num_classes={num_classes}, dist='{dist}'. "
            "Use 3 classes, or 5 classes with dist='weighted' or 'balanced'."
        )

    with_random = sample.randomColumn("random", seed)
    training_gcp = with_random.filter(ee.Filter.lt("random", split))
    testing_gcp = with_random.filter(ee.Filter.gte("random", split))

    training = image_to_classify.sampleRegions(
        collection=training_gcp, properties=[CLASS_BAND], scale=sample_scale, tileScale=tile_scale
    )
    testing = image_to_classify.sampleRegions(
        collection=testing_gcp, properties=[CLASS_BAND], scale=sample_scale, tileScale=tile_scale
    )
    return {"training": training, "testing": testing}


def train_classifier(to_classify, training, tuned=False, params=None):
    """
    Trains a random forest classifier on sampled ground control points.

    Args:
        to_classify (ee.Image): predictor image; all of its bands are used as inputs.
        training (ee.FeatureCollection): training points with a 'landcover' property.
        tuned (bool): if True, use `params`; otherwise a 50-tree forest with default settings.
        params (list, optional): [numberOfTrees, variablesPerSplit, minLeafPopulation, bagFraction, maxNodes, seed].

    Returns:
        ee.Classifier: trained classifier.

    Raises:
        ValueError: if tuned is True and params does not hold the six values.
    """
    if tuned:
        if params is None or len(params) != 6:
            raise ValueError(
                "params must be [numberOfTrees, variablesPerSplit, minLeafPopulation, bagFraction, maxNodes, seed]."
            )
        classifier = ee.Classifier.smileRandomForest(
            numberOfTrees=params[0],
            variablesPerSplit=params[1],
            minLeafPopulation=params[2],
            bagFraction=params[3],
            maxNodes=params[4],
            seed=params[5],
        )
    else:
        classifier = ee.Classifier.smileRandomForest(50)
    return classifier.train(
        features=training,
        classProperty=CLASS_BAND,
        inputProperties=to_classify.bandNames(),
    )


def class_area(class_image, scale, geometry, max_pixels=1e10):
    """
    Sums the pixel area of every class of a class image within a geometry.

    Args:
        class_image (ee.Image): single band class image.
        scale (int): reduction scale in meters.
        geometry (ee.Geometry): region to reduce over.
        max_pixels (float): maximum number of pixels for the reduction.

    Returns:
        ee.Dictionary: class value (as string) -> area in square kilometers.
    """
    area_image = ee.Image.pixelArea().addBands(class_image)
    areas = area_image.reduceRegion(
        reducer=ee.Reducer.sum().group(groupField=1, groupName="class"),
        geometry=geometry,
        scale=scale,
        maxPixels=max_pixels,
    )
    class_areas = ee.List(areas.get("groups"))

    def _class_area_pair(item):
        area_dict = ee.Dictionary(item)
        class_number = ee.Number(area_dict.get("class")).format()
        area = ee.Number(area_dict.get("sum")).divide(1e6)
        return ee.List([class_number, area])

    return ee.Dictionary(class_areas.map(_class_area_pair).flatten())


def class_area_df(class_image, scale, geometry, max_pixels=1e10):
    """
    Same as class_area, fetched client-side as a pandas DataFrame.

    Returns:
        pd.DataFrame: columns 'class' (int) and 'area_km2', sorted by class.
    """
    areas = class_area(class_image, scale, geometry, max_pixels).getInfo()
    df = pd.DataFrame(
        [(int(float(k)), v) for k, v in areas.items()], columns=["class", "area_km2"]
    )
    return df.sort_values(by="class").reset_index(drop=True)
