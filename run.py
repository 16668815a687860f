"""
Frequent buyer platform entry point.
"""
import os
import sys
import logging

from frequent_buyer import create_app

logger = logging.getLogger('frequent_buyer')

config_name = os.getenv('FLASK_ENV', 'production')

try:
    app = create_app(config_name)
    logger.info(f"[FrequentBuyer] Config: {config_name}, routes: {len(list(app.url_map.iter_rules()))}")
except Exception as e:
    logger.exception(f"[FrequentBuyer] FATAL ERROR during app creation: {e}")
    sys.exit(1)

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=os.getenv('FLASK_ENV') == 'development'
    )
