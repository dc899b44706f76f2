from .raw_materials import raw_materials_blueprint
from .products import products_blueprint
from .production import production_blueprint
from .waste import waste_blueprint
